import pytest
from sqlalchemy.exc import OperationalError

from matchledger.database import SQLITE_IMMEDIATE
from matchledger.errors import InvalidPair, QuotaExceeded, StoreUnavailable, UnknownProfile
from matchledger.models import PriorityMatch, Profile
from matchledger.services import ledger


def test_upsert_overwrites_single_row_and_keeps_created_at(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    first = ledger.upsert_edge(db, founder.id, investor.id, "low", False, founder.id)
    created_at = first.created_at
    second = ledger.upsert_edge(db, founder.id, investor.id, "high", False, investor.id)

    assert second.id == first.id
    assert second.priority == "high"
    assert second.set_by == investor.id
    assert second.created_at == created_at
    assert db.query(PriorityMatch).count() == 1


def test_not_interested_row_has_no_priority(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    ledger.upsert_edge(db, founder.id, investor.id, "high", False, founder.id)

    row = ledger.upsert_edge(db, founder.id, investor.id, None, True, founder.id)

    assert row.priority is None
    assert row.not_interested is True


def test_delete_is_a_noop_when_absent(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    ledger.upsert_edge(db, founder.id, investor.id, "medium", False, founder.id)

    assert ledger.delete_edge(db, founder.id, investor.id) is True
    assert ledger.delete_edge(db, founder.id, investor.id) is False
    assert ledger.get_edge(db, founder.id, investor.id) is None


def test_list_edges_for_profile_covers_both_columns(db, make_profile):
    founder = make_profile("founder", "Ada")
    low_id_investor = make_profile("investor", "Priya")
    high_id_investor = make_profile("investor", "Sam")
    ledger.upsert_edge(db, founder.id, low_id_investor.id, "low", False, founder.id)
    ledger.upsert_edge(db, low_id_investor.id, high_id_investor.id, "medium", False, high_id_investor.id)

    priya = ledger.list_edges_for_profile(db, low_id_investor.id)
    sam = ledger.list_edges_for_profile(db, high_id_investor.id)

    assert len(priya) == 2
    assert [(e.founder_id, e.investor_id) for e in sam] == [(low_id_investor.id, high_id_investor.id)]
    assert len(ledger.list_edges_all(db)) == 2


def test_rejects_illegal_pairs(db, make_profile):
    founder = make_profile("founder", "Ada")
    other_founder = make_profile("founder", "Tomas")
    investor = make_profile("investor", "Priya")
    later_investor = make_profile("investor", "Sam")

    with pytest.raises(InvalidPair):
        ledger.upsert_edge(db, founder.id, other_founder.id, "low", False, founder.id)
    with pytest.raises(InvalidPair):
        ledger.upsert_edge(db, investor.id, investor.id, "low", False, investor.id)
    with pytest.raises(InvalidPair):
        ledger.upsert_edge(db, later_investor.id, investor.id, "low", False, investor.id)
    with pytest.raises(InvalidPair):
        ledger.upsert_edge(db, founder.id, investor.id, "low", False, other_founder.id)
    with pytest.raises(UnknownProfile):
        ledger.upsert_edge(db, founder.id, 9999, "low", False, founder.id)
    assert ledger.list_edges_all(db) == []


def test_conditional_write_enforces_quota_inside_store(db, make_profile):
    founder = make_profile("founder", "Ada")
    investors = [make_profile("investor", f"Investor {i}") for i in range(6)]
    for investor in investors[:5]:
        ledger.upsert_edge(db, founder.id, investor.id, "high", False, founder.id, quota_limit=5)

    with pytest.raises(QuotaExceeded):
        ledger.upsert_edge(
            db, founder.id, investors[5].id, "high", False, founder.id, quota_limit=5
        )
    assert ledger.get_edge(db, founder.id, investors[5].id) is None

    # Re-affirming an edge that already counts is not a new slot.
    again = ledger.upsert_edge(
        db, founder.id, investors[0].id, "high", False, founder.id, quota_limit=5
    )
    assert again.priority == "high"
    assert ledger.count_high_priority(db, founder.id) == 5


def test_high_edges_count_for_both_ends_whoever_set_them(db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    ledger.upsert_edge(db, founder.id, investor.id, "high", False, investor.id)

    assert ledger.count_high_priority(db, founder.id) == 1
    assert ledger.count_high_priority(db, investor.id) == 1


def test_conditional_write_checks_the_receiving_end(db, make_profile):
    founder = make_profile("founder", "Ada")
    investors = [make_profile("investor", f"Investor {i}") for i in range(6)]
    for investor in investors[:5]:
        ledger.upsert_edge(db, founder.id, investor.id, "high", False, investor.id, quota_limit=5)

    with pytest.raises(QuotaExceeded):
        ledger.upsert_edge(db, founder.id, investors[5].id, "high", False, investors[5].id, quota_limit=5)

    assert ledger.get_edge(db, founder.id, investors[5].id) is None
    assert ledger.count_high_priority(db, investors[5].id) == 0


def test_plain_reads_leave_the_write_lock_free(session_factory, db, make_profile):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")
    reader = session_factory()
    try:
        reader.query(Profile).all()
        assert reader.connection().info[SQLITE_IMMEDIATE] is False

        row = ledger.upsert_edge(db, founder.id, investor.id, "low", False, founder.id)

        assert row.priority == "low"
    finally:
        reader.close()


def test_backend_failures_surface_as_store_unavailable(db, make_profile, monkeypatch):
    founder = make_profile("founder", "Ada")
    investor = make_profile("investor", "Priya")

    def broken(*_args, **_kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db, "execute", broken)
    with pytest.raises(StoreUnavailable):
        ledger.upsert_edge(db, founder.id, investor.id, "low", False, founder.id)
    monkeypatch.undo()
    assert ledger.list_edges_all(db) == []
