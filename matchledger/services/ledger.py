"""Persistence for priority match edges.

One row per (founder_id, investor_id) key. Writes go through a native
``INSERT ... ON CONFLICT DO UPDATE`` so re-submitting the same action never
creates a second row. When a cap is passed, it is checked for both ends
of the pair, inside the same transaction as the write, so two racing
submissions cannot both pass it.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import and_, func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from matchledger.database import SQLITE_IMMEDIATE
from matchledger.errors import Conflict, InvalidPair, LedgerError, QuotaExceeded, StoreUnavailable, UnknownProfile
from matchledger.models import PriorityMatch, Profile

logger = logging.getLogger(__name__)

HIGH = "high"


@contextmanager
def _store_call(db: Session, operation: str):
    try:
        yield
    except LedgerError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.error("%s violated a ledger constraint: %s", operation, exc.orig)
        raise Conflict() from exc
    except DBAPIError as exc:
        db.rollback()
        logger.exception("%s failed against the match store", operation)
        raise StoreUnavailable() from exc


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise StoreUnavailable(f"Upsert is not supported on {dialect}")


def _pair_filter(founder_id: int, investor_id: int):
    return and_(PriorityMatch.founder_id == founder_id, PriorityMatch.investor_id == investor_id)


def _validate_pair(db: Session, founder_id: int, investor_id: int, set_by: int):
    if founder_id == investor_id:
        raise InvalidPair("A profile cannot be matched with itself")
    rows = db.query(Profile).filter(Profile.id.in_([founder_id, investor_id])).all()
    profiles = {row.id: row for row in rows}
    founder = profiles.get(founder_id)
    investor = profiles.get(investor_id)
    if not founder or not investor:
        raise UnknownProfile()
    if investor.user_type != "investor":
        raise InvalidPair("investor_id must reference an investor")
    if founder.user_type == "investor" and founder_id > investor_id:
        raise InvalidPair("Investor pairs are stored with the lower id in the founder column")
    if set_by not in (founder_id, investor_id):
        raise InvalidPair("set_by must be one of the matched profiles")


def begin_write(db: Session):
    """Make sure the session is inside a write transaction.

    On SQLite a deferred read snapshot cannot be upgraded safely under
    contention, so it is closed and an IMMEDIATE transaction opened instead.
    Other backends rely on row locks and need nothing here.
    """
    if db.get_bind().dialect.name != "sqlite":
        return
    if db.in_transaction():
        if db.connection().info.get(SQLITE_IMMEDIATE):
            return
        db.commit()
    db.connection(execution_options={SQLITE_IMMEDIATE: True})


def lock_profiles(db: Session, *profile_ids: int) -> list[Profile]:
    """Serialise writers acting on behalf of the given profiles.

    Rows are locked in ascending id order so two writers touching the same
    pair from opposite ends cannot deadlock. PostgreSQL takes row locks;
    SQLite ignores FOR UPDATE and relies on the IMMEDIATE transaction.
    """
    with _store_call(db, "lock_profiles"):
        begin_write(db)
        return (
            db.query(Profile)
            .filter(Profile.id.in_(sorted(set(profile_ids))))
            .order_by(Profile.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )


def get_edge(db: Session, founder_id: int, investor_id: int) -> PriorityMatch | None:
    with _store_call(db, "get_edge"):
        return (
            db.query(PriorityMatch)
            .populate_existing()
            .filter(_pair_filter(founder_id, investor_id))
            .first()
        )


def count_high_priority(db: Session, profile_id: int, exclude: tuple[int, int] | None = None) -> int:
    """High edges touching the profile from either column, whoever set them."""
    with _store_call(db, "count_high_priority"):
        query = db.query(func.count(PriorityMatch.id)).filter(
            or_(PriorityMatch.founder_id == profile_id, PriorityMatch.investor_id == profile_id),
            PriorityMatch.priority == HIGH,
        )
        if exclude is not None:
            query = query.filter(~_pair_filter(*exclude))
        return query.scalar() or 0


def _enforce_quota(db: Session, limit: int, founder_id: int, investor_id: int):
    lock_profiles(db, founder_id, investor_id)
    existing = get_edge(db, founder_id, investor_id)
    if existing is not None and existing.priority == HIGH:
        return
    for profile_id in sorted((founder_id, investor_id)):
        current = count_high_priority(db, profile_id, exclude=(founder_id, investor_id))
        if current >= limit:
            logger.warning(
                "Rejected high priority %s->%s: profile %s has %s of %s",
                founder_id, investor_id, profile_id, current, limit,
            )
            raise QuotaExceeded(f"Profile {profile_id} already has {limit} high priority matches")


def upsert_edge(
    db: Session,
    founder_id: int,
    investor_id: int,
    priority: str | None,
    not_interested: bool,
    set_by: int,
    quota_limit: int | None = None,
) -> PriorityMatch:
    with _store_call(db, "upsert_edge"):
        begin_write(db)
        _validate_pair(db, founder_id, investor_id, set_by)
        if quota_limit is not None and priority == HIGH:
            _enforce_quota(db, quota_limit, founder_id, investor_id)

        insert = _insert_for(db)
        stmt = insert(PriorityMatch).values(
            founder_id=founder_id,
            investor_id=investor_id,
            priority=priority,
            not_interested=not_interested,
            set_by=set_by,
        )
        # created_at is left alone so the first-insert timestamp survives.
        stmt = stmt.on_conflict_do_update(
            index_elements=[PriorityMatch.founder_id, PriorityMatch.investor_id],
            set_={
                "priority": stmt.excluded.priority,
                "not_interested": stmt.excluded.not_interested,
                "set_by": stmt.excluded.set_by,
                "updated_at": func.now(),
            },
        )
        db.execute(stmt)
        row = get_edge(db, founder_id, investor_id)
        if row is None:
            raise Conflict("Upserted priority match could not be read back")
        db.commit()
    logger.info(
        "Stored priority match %s->%s priority=%s not_interested=%s set_by=%s",
        founder_id, investor_id, priority, not_interested, set_by,
    )
    return row


def delete_edge(db: Session, founder_id: int, investor_id: int) -> bool:
    with _store_call(db, "delete_edge"):
        begin_write(db)
        removed = (
            db.query(PriorityMatch)
            .filter(_pair_filter(founder_id, investor_id))
            .delete(synchronize_session="fetch")
        )
        db.commit()
    if removed:
        logger.info("Deleted priority match %s->%s", founder_id, investor_id)
    return bool(removed)


def list_edges_for_profile(db: Session, profile_id: int) -> list[PriorityMatch]:
    with _store_call(db, "list_edges_for_profile"):
        return (
            db.query(PriorityMatch)
            .populate_existing()
            .filter(or_(PriorityMatch.founder_id == profile_id, PriorityMatch.investor_id == profile_id))
            .order_by(PriorityMatch.id.asc())
            .all()
        )


def list_edges_all(db: Session) -> list[PriorityMatch]:
    with _store_call(db, "list_edges_all"):
        return db.query(PriorityMatch).populate_existing().order_by(PriorityMatch.id.asc()).all()
