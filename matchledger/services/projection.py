"""Per-viewer dashboard state kept in step with the ledger.

The projection only changes after the service confirms a write. It moves the
cached high-priority counter by the delta the service computed from its
pre-write snapshot, and never re-derives that delta from its own cards.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy.orm import Session

from matchledger.errors import MutationInFlight, NotAuthenticated, UnknownProfile
from matchledger.models import Profile
from matchledger.services import ledger
from matchledger.services.priority import (
    MAX_HIGH_PRIORITY,
    NO_RELATIONSHIP,
    NOT_INTERESTED,
    EdgeSnapshot,
    PriorityOutcome,
    can_match,
    edge_state,
    high_priority_count,
)

logger = logging.getLogger(__name__)


@dataclass
class CounterpartCard:
    profile_id: int
    display_name: str
    company_name: str
    user_type: str
    created_at: datetime | None = None
    edge: EdgeSnapshot | None = None

    @property
    def state(self) -> str:
        return edge_state(self.edge)

    def is_active_interest(self) -> bool:
        return self.edge is not None and bool(self.edge.priority) and not self.edge.not_interested

    def as_dict(self) -> dict:
        return {
            "profile_id": self.profile_id,
            "display_name": self.display_name,
            "company_name": self.company_name,
            "user_type": self.user_type,
            "state": self.state,
            "edge": self.edge.as_dict() if self.edge else None,
        }


class DashboardProjection:
    def __init__(self, viewer_id: int, viewer_type: str, cards: list[CounterpartCard], high_priority_count: int):
        self.viewer_id = viewer_id
        self.viewer_type = viewer_type
        self.high_priority_count = high_priority_count
        self._cards = {card.profile_id: card for card in cards}
        self._order = [card.profile_id for card in cards]
        self._pending: set[int] = set()

    @classmethod
    def load(cls, db: Session, viewer: Profile | None) -> "DashboardProjection":
        if viewer is None:
            raise NotAuthenticated()
        others = (
            db.query(Profile)
            .filter(Profile.id != viewer.id)
            .order_by(Profile.created_at.desc(), Profile.id.desc())
            .all()
        )
        edges = {
            row.partner_of(viewer.id): EdgeSnapshot.from_row(row)
            for row in ledger.list_edges_for_profile(db, viewer.id)
        }
        cards = [
            CounterpartCard(
                profile_id=other.id,
                display_name=other.display_name,
                company_name=other.company_name,
                user_type=other.user_type,
                created_at=other.created_at,
                edge=edges.get(other.id),
            )
            for other in others
            if can_match(viewer, other)
        ]
        return cls(viewer.id, viewer.user_type, cards, high_priority_count(db, viewer))

    @property
    def cards(self) -> list[CounterpartCard]:
        return [self._cards[pid] for pid in self._order]

    def card(self, profile_id: int) -> CounterpartCard:
        try:
            return self._cards[profile_id]
        except KeyError:
            raise UnknownProfile() from None

    def is_pending(self, profile_id: int) -> bool:
        return profile_id in self._pending

    def apply(self, outcome: PriorityOutcome) -> CounterpartCard:
        if outcome.viewer_id != self.viewer_id:
            raise ValueError("Outcome belongs to a different viewer")
        card = self.card(outcome.counterpart_id)
        if card.edge != outcome.before:
            # Another session changed this edge since we loaded; trust the ledger's count.
            logger.warning(
                "Projection for %s was stale on counterpart %s", self.viewer_id, outcome.counterpart_id
            )
        updated = replace(card, edge=outcome.after)
        self._cards[card.profile_id] = updated
        self.high_priority_count += outcome.quota_delta
        if self.high_priority_count != outcome.quota_count:
            logger.warning(
                "Reconciling high priority count for %s: cached=%s ledger=%s",
                self.viewer_id, self.high_priority_count, outcome.quota_count,
            )
            self.high_priority_count = outcome.quota_count
        return updated

    def submit(self, counterpart_id: int, action: Callable[[], PriorityOutcome]) -> PriorityOutcome:
        """Run one mutation for a counterpart; nothing changes here unless it succeeds."""
        self.card(counterpart_id)
        if counterpart_id in self._pending:
            raise MutationInFlight()
        self._pending.add(counterpart_id)
        try:
            outcome = action()
        finally:
            self._pending.discard(counterpart_id)
        self.apply(outcome)
        return outcome

    def discover(self) -> list[CounterpartCard]:
        return [c for c in self.cards if c.state == NO_RELATIONSHIP]

    def prioritised(self, user_type: str | None = None) -> list[CounterpartCard]:
        return [
            c
            for c in self.cards
            if c.is_active_interest()
            and c.edge.set_by == self.viewer_id
            and (user_type is None or c.user_type == user_type)
        ]

    def not_interested(self) -> list[CounterpartCard]:
        return [c for c in self.cards if c.state == NOT_INTERESTED]

    def they_matched_me(self) -> list[CounterpartCard]:
        return [c for c in self.cards if c.is_active_interest() and c.edge.set_by != self.viewer_id]

    def i_matched_them(self) -> list[CounterpartCard]:
        return [c for c in self.cards if c.is_active_interest() and c.edge.set_by == self.viewer_id]

    def mutual_matches(self) -> list[CounterpartCard]:
        # One row per pair only records the last writer, so the best available
        # evidence of mutual interest is a live priority set by the other side.
        # TODO: split priority into founder_priority/investor_priority to model both directions.
        return self.they_matched_me()

    def snapshot(self) -> dict:
        return {
            "viewer_id": self.viewer_id,
            "viewer_type": self.viewer_type,
            "high_priority_count": self.high_priority_count,
            "high_priority_limit": MAX_HIGH_PRIORITY,
            "high_priority_remaining": max(0, MAX_HIGH_PRIORITY - self.high_priority_count),
            "cards": [c.as_dict() for c in self.cards],
            "views": {
                "discover": [c.profile_id for c in self.discover()],
                "priority": [c.profile_id for c in self.prioritised()],
                "not_interested": [c.profile_id for c in self.not_interested()],
                "mutual": [c.profile_id for c in self.mutual_matches()],
                "they_matched": [c.profile_id for c in self.they_matched_me()],
                "i_matched": [c.profile_id for c in self.i_matched_them()],
            },
        }
