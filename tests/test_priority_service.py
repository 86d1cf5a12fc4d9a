import pytest

from matchledger.errors import InvalidPair, InvalidPriority, NotAuthenticated, QuotaExceeded, UnknownProfile
from matchledger.models import PriorityMatch
from matchledger.services import ledger
from matchledger.services.priority import (
    MAX_HIGH_PRIORITY,
    high_priority_count,
    remove_match,
    resolve_pair,
    set_not_interested,
    set_priority,
)


def _founder_with_investors(make_profile, count: int):
    founder = make_profile("founder", "Ada")
    investors = [make_profile("investor", f"Investor {i}") for i in range(count)]
    return founder, investors


def test_founder_rows_put_viewer_in_founder_column(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    assert resolve_pair(founder, investor) == (founder.id, investor.id)
    assert resolve_pair(investor, founder) == (founder.id, investor.id)


def test_founders_cannot_match_founders(db, make_profile):
    founder = make_profile("founder", "Ada")
    other = make_profile("founder", "Tomas")

    with pytest.raises(InvalidPair):
        set_priority(db, founder, other.id, "high")
    with pytest.raises(InvalidPair):
        set_priority(db, founder, founder.id, "low")
    with pytest.raises(UnknownProfile):
        set_priority(db, founder, 4242, "low")


def test_requires_authenticated_viewer(db, make_profile):
    investor = make_profile("investor", "Priya")

    with pytest.raises(NotAuthenticated):
        set_priority(db, None, investor.id, "high")
    with pytest.raises(NotAuthenticated):
        set_not_interested(db, None, investor.id)
    with pytest.raises(NotAuthenticated):
        remove_match(db, None, investor.id)


@pytest.mark.parametrize("value", ["HIGH", "high\n", "urgent", 3, ""])
def test_malformed_priority_is_rejected_not_cleaned(db, make_profile, value):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    with pytest.raises(InvalidPriority):
        set_priority(db, founder, investor.id, value)
    assert ledger.list_edges_all(db) == []


def test_set_priority_twice_is_idempotent(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    first = set_priority(db, founder, investor.id, "high")
    second = set_priority(db, founder, investor.id, "high")

    assert first.quota_count == second.quota_count == 1
    assert first.quota_delta == 1
    assert second.quota_delta == 0
    assert second.after.id == first.after.id
    assert second.state == "high"
    assert db.query(PriorityMatch).count() == 1


def test_sixth_high_priority_is_rejected_without_a_write(db, make_profile):
    founder, investors = _founder_with_investors(make_profile, 6)
    for investor in investors[:5]:
        set_priority(db, founder, investor.id, "high")

    with pytest.raises(QuotaExceeded):
        set_priority(db, founder, investors[5].id, "high")

    assert ledger.get_edge(db, founder.id, investors[5].id) is None
    assert high_priority_count(db, founder) == MAX_HIGH_PRIORITY


def test_reaffirming_existing_high_priority_at_limit_succeeds(db, make_profile):
    founder, investors = _founder_with_investors(make_profile, 5)
    for investor in investors:
        set_priority(db, founder, investor.id, "high")

    outcome = set_priority(db, founder, investors[0].id, "high")

    assert outcome.quota_count == MAX_HIGH_PRIORITY
    assert outcome.quota_delta == 0


def test_lower_priorities_are_not_capped(db, make_profile):
    founder, investors = _founder_with_investors(make_profile, 7)
    for investor in investors[:5]:
        set_priority(db, founder, investor.id, "high")

    set_priority(db, founder, investors[5].id, "medium")
    outcome = set_priority(db, founder, investors[6].id, "low")

    assert outcome.quota_count == MAX_HIGH_PRIORITY
    assert len(ledger.list_edges_for_profile(db, founder.id)) == 7


def test_downgrading_high_frees_a_slot(db, make_profile):
    founder, investors = _founder_with_investors(make_profile, 6)
    for investor in investors[:5]:
        set_priority(db, founder, investor.id, "high")

    downgrade = set_priority(db, founder, investors[0].id, "medium")
    upgrade = set_priority(db, founder, investors[5].id, "high")

    assert downgrade.quota_delta == -1
    assert upgrade.quota_count == MAX_HIGH_PRIORITY


def test_medium_then_remove_returns_to_no_relationship(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    set_priority(db, founder, investor.id, "medium")
    outcome = remove_match(db, founder, investor.id)

    assert outcome.state == "no_relationship"
    assert outcome.before.priority == "medium"
    assert ledger.list_edges_for_profile(db, founder.id) == []


def test_remove_is_idempotent(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    outcome = remove_match(db, founder, investor.id)

    assert outcome.before is None
    assert outcome.quota_delta == 0


def test_priority_none_removes_the_row(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    set_priority(db, founder, investor.id, "high")

    outcome = set_priority(db, founder, investor.id, "none")

    assert outcome.action == "remove_match"
    assert outcome.quota_delta == -1
    assert ledger.get_edge(db, founder.id, investor.id) is None


def test_not_interested_clears_priority_and_releases_quota(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    set_priority(db, founder, investor.id, "high")
    before = high_priority_count(db, founder)

    outcome = set_not_interested(db, founder, investor.id)

    assert outcome.after.priority is None
    assert outcome.after.not_interested is True
    assert outcome.state == "not_interested"
    assert high_priority_count(db, founder) == before - 1
    assert outcome.quota_delta == -1


def test_counterpart_not_interested_clears_high_for_both_ends(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    set_priority(db, founder, investor.id, "high")

    outcome = set_not_interested(db, investor, founder.id)

    # The single row is overwritten by the investor, so neither end still counts it.
    assert outcome.quota_delta == -1
    assert outcome.quota_count == 0
    assert high_priority_count(db, founder) == 0
    assert high_priority_count(db, investor) == 0
    assert ledger.get_edge(db, founder.id, investor.id).set_by == investor.id


def test_investor_pair_is_shared_by_both_investors(db, make_profile):
    x = make_profile("investor", "Xavier")
    y = make_profile("investor", "Yara")

    set_priority(db, x, y.id, "low")
    set_priority(db, y, x.id, "medium")

    x_edges = ledger.list_edges_for_profile(db, x.id)
    y_edges = ledger.list_edges_for_profile(db, y.id)
    assert len(x_edges) == len(y_edges) == 1
    assert x_edges[0].id == y_edges[0].id
    assert x_edges[0].priority == "medium"
    assert x_edges[0].set_by == y.id


def test_pair_uniqueness_holds_across_mixed_sequences(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    set_priority(db, founder, investor.id, "low")
    set_not_interested(db, investor, founder.id)
    set_priority(db, investor, founder.id, "high")
    remove_match(db, founder, investor.id)
    set_priority(db, founder, investor.id, "medium")
    set_priority(db, investor, founder.id, "medium")

    rows = db.query(PriorityMatch).filter(
        PriorityMatch.founder_id == founder.id, PriorityMatch.investor_id == investor.id
    ).all()
    assert len(rows) == 1


def test_inbound_high_priorities_are_capped_per_profile(db, make_profile):
    founder = make_profile("founder", "Ada")
    investors = [make_profile("investor", f"Investor {i}") for i in range(6)]
    for investor in investors[:5]:
        set_priority(db, investor, founder.id, "high")

    with pytest.raises(QuotaExceeded):
        set_priority(db, investors[5], founder.id, "high")

    touching = db.query(PriorityMatch).filter(
        PriorityMatch.founder_id == founder.id, PriorityMatch.priority == "high"
    ).count()
    assert touching == MAX_HIGH_PRIORITY
    assert high_priority_count(db, founder) == MAX_HIGH_PRIORITY
    assert ledger.get_edge(db, founder.id, investors[5].id) is None


def test_full_profile_cannot_add_its_own_high_pick_either(db, make_profile):
    founder = make_profile("founder", "Ada")
    investors = [make_profile("investor", f"Investor {i}") for i in range(6)]
    for investor in investors[:5]:
        set_priority(db, investor, founder.id, "high")

    with pytest.raises(QuotaExceeded):
        set_priority(db, founder, investors[5].id, "high")

    # The viewer can still re-affirm or lower an edge the other side made high.
    reaffirm = set_priority(db, founder, investors[0].id, "high")
    assert reaffirm.quota_delta == 0
    assert reaffirm.after.set_by == founder.id
    assert set_priority(db, founder, investors[1].id, "medium").quota_count == MAX_HIGH_PRIORITY - 1


def test_investor_pair_high_counts_for_both_investors(db, make_profile):
    x = make_profile("investor", "Xavier")
    y = make_profile("investor", "Yara")

    outcome = set_priority(db, y, x.id, "high")

    assert outcome.quota_count == 1
    assert high_priority_count(db, x) == 1
    assert high_priority_count(db, y) == 1
