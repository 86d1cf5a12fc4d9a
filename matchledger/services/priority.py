"""Business rules for priority matches.

Every mutation runs as one transaction: lock the viewer, snapshot the edge
and the viewer's high-priority count, write, then report the quota change.
The quota is always a derived count of high edges touching a profile, from
either side of the pair; the only arithmetic on it is :func:`quota_delta`.
"""

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from matchledger.errors import InvalidPair, InvalidPriority, LedgerError, NotAuthenticated, QuotaExceeded, UnknownProfile
from matchledger.models import PRIORITIES, PriorityMatch, Profile
from matchledger.services import ledger

logger = logging.getLogger(__name__)

MAX_HIGH_PRIORITY = 5
HIGH = "high"
NO_RELATIONSHIP = "no_relationship"
NOT_INTERESTED = "not_interested"


@dataclass(frozen=True)
class EdgeSnapshot:
    id: int
    founder_id: int
    investor_id: int
    priority: str | None
    not_interested: bool
    set_by: int
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: PriorityMatch | None) -> "EdgeSnapshot | None":
        if row is None:
            return None
        return cls(
            id=row.id,
            founder_id=row.founder_id,
            investor_id=row.investor_id,
            priority=row.priority,
            not_interested=bool(row.not_interested),
            set_by=row.set_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def as_dict(self) -> dict:
        data = asdict(self)
        for key in ("created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass(frozen=True)
class PriorityOutcome:
    viewer_id: int
    counterpart_id: int
    action: str
    before: EdgeSnapshot | None
    after: EdgeSnapshot | None
    quota_count: int
    quota_delta: int

    @property
    def state(self) -> str:
        return edge_state(self.after)

    def as_dict(self) -> dict:
        return {
            "viewer_id": self.viewer_id,
            "counterpart_id": self.counterpart_id,
            "action": self.action,
            "state": self.state,
            "edge": self.after.as_dict() if self.after else None,
            "high_priority_count": self.quota_count,
            "high_priority_delta": self.quota_delta,
            "high_priority_limit": MAX_HIGH_PRIORITY,
        }


def edge_state(edge: EdgeSnapshot | None) -> str:
    if edge is None:
        return NO_RELATIONSHIP
    if edge.not_interested:
        return NOT_INTERESTED
    return edge.priority or NO_RELATIONSHIP


def is_high(edge: EdgeSnapshot | None) -> bool:
    return edge is not None and edge.priority == HIGH


def quota_delta(before: EdgeSnapshot | None, after: EdgeSnapshot | None) -> int:
    """Change in high edges for either end of the pair."""
    return int(is_high(after)) - int(is_high(before))


def parse_priority(value) -> str | None:
    """Accept high/medium/low, or None/"none" to clear. Anything else is rejected, not cleaned."""
    if value is None or value == "none":
        return None
    if isinstance(value, str) and value in PRIORITIES:
        return value
    raise InvalidPriority()


def can_match(viewer: Profile, other: Profile) -> bool:
    if viewer.id == other.id:
        return False
    if viewer.user_type == "founder":
        return other.user_type == "investor"
    return viewer.user_type == "investor" and other.user_type in ("founder", "investor")


def resolve_pair(viewer: Profile, counterpart: Profile) -> tuple[int, int]:
    """Return (founder_id, investor_id) for an edge between viewer and counterpart."""
    if viewer.id == counterpart.id:
        raise InvalidPair("A profile cannot be matched with itself")
    if viewer.user_type == "founder":
        if counterpart.user_type != "investor":
            raise InvalidPair("Founders can only match with investors")
        return viewer.id, counterpart.id
    if viewer.user_type != "investor":
        raise InvalidPair(f"Unknown profile type {viewer.user_type!r}")
    if counterpart.user_type == "founder":
        return counterpart.id, viewer.id
    if counterpart.user_type == "investor":
        # Investor pairs overload the founder column; ordering makes the key unordered.
        return min(viewer.id, counterpart.id), max(viewer.id, counterpart.id)
    raise InvalidPair(f"Unknown profile type {counterpart.user_type!r}")


def _require_viewer(viewer: Profile | None) -> Profile:
    if viewer is None or viewer.id is None:
        raise NotAuthenticated()
    return viewer


@contextmanager
def _mutation(db: Session):
    try:
        yield
    except LedgerError:
        db.rollback()
        raise


def _prepare(db: Session, viewer: Profile, counterpart_id: int):
    ledger.lock_profiles(db, viewer.id, counterpart_id)
    counterpart = db.get(Profile, counterpart_id)
    if counterpart is None:
        raise UnknownProfile()
    founder_id, investor_id = resolve_pair(viewer, counterpart)
    before = EdgeSnapshot.from_row(ledger.get_edge(db, founder_id, investor_id))
    current = ledger.count_high_priority(db, viewer.id)
    return founder_id, investor_id, before, current


def _outcome(viewer: Profile, counterpart_id: int, action: str, before, after, current: int) -> PriorityOutcome:
    delta = quota_delta(before, after)
    return PriorityOutcome(
        viewer_id=viewer.id,
        counterpart_id=counterpart_id,
        action=action,
        before=before,
        after=after,
        quota_count=current + delta,
        quota_delta=delta,
    )


def high_priority_count(db: Session, viewer: Profile | None) -> int:
    viewer = _require_viewer(viewer)
    return ledger.count_high_priority(db, viewer.id)


def set_priority(db: Session, viewer: Profile | None, counterpart_id: int, priority) -> PriorityOutcome:
    viewer = _require_viewer(viewer)
    level = parse_priority(priority)
    if level is None:
        return remove_match(db, viewer, counterpart_id)

    with _mutation(db):
        founder_id, investor_id, before, current = _prepare(db, viewer, counterpart_id)
        if level == HIGH and not is_high(before):
            if current >= MAX_HIGH_PRIORITY:
                logger.warning("Profile %s is at the high priority limit (%s)", viewer.id, current)
                raise QuotaExceeded(f"You can only have up to {MAX_HIGH_PRIORITY} high priority matches")
            if ledger.count_high_priority(db, counterpart_id) >= MAX_HIGH_PRIORITY:
                logger.warning("Counterpart %s is at the high priority limit", counterpart_id)
                raise QuotaExceeded(f"This profile already has {MAX_HIGH_PRIORITY} high priority matches")
        row = ledger.upsert_edge(
            db,
            founder_id,
            investor_id,
            priority=level,
            not_interested=False,
            set_by=viewer.id,
            quota_limit=MAX_HIGH_PRIORITY,
        )
        after = EdgeSnapshot.from_row(row)
    return _outcome(viewer, counterpart_id, "set_priority", before, after, current)


def set_not_interested(db: Session, viewer: Profile | None, counterpart_id: int) -> PriorityOutcome:
    viewer = _require_viewer(viewer)
    with _mutation(db):
        founder_id, investor_id, before, current = _prepare(db, viewer, counterpart_id)
        row = ledger.upsert_edge(
            db,
            founder_id,
            investor_id,
            priority=None,
            not_interested=True,
            set_by=viewer.id,
        )
        after = EdgeSnapshot.from_row(row)
    return _outcome(viewer, counterpart_id, "not_interested", before, after, current)


def remove_match(db: Session, viewer: Profile | None, counterpart_id: int) -> PriorityOutcome:
    viewer = _require_viewer(viewer)
    with _mutation(db):
        founder_id, investor_id, before, current = _prepare(db, viewer, counterpart_id)
        ledger.delete_edge(db, founder_id, investor_id)
    return _outcome(viewer, counterpart_id, "remove_match", before, None, current)
