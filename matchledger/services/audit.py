import json
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from matchledger.models import AuditLog

logger = logging.getLogger(__name__)


def write_audit_log(
    db: Session,
    actor: dict | None,
    action: str,
    target_type: str = "",
    target_id: str = "",
    status: str = "success",
    details: dict | None = None,
):
    try:
        row = AuditLog(
            actor_profile_id=(actor or {}).get("profile_id"),
            actor_label=(actor or {}).get("label") or "anonymous",
            action=action,
            target_type=target_type,
            target_id=str(target_id) if target_id else "",
            status=status,
            details=json.dumps(details or {}, separators=(",", ":"), sort_keys=True, default=str),
        )
        db.add(row)
        db.commit()
    except SQLAlchemyError:
        # Audit is best effort; the caller's outcome stands.
        logger.exception("Could not write audit log for %s", action)
        db.rollback()
