import logging

from sqlalchemy.orm import Session

from matchledger.models import SystemSetting
from matchledger.services.ledger import begin_write

logger = logging.getLogger(__name__)

SIGNUPS_ENABLED = "signups_enabled"


def get_setting(db: Session, key: str, default: str | None = None) -> str | None:
    row = db.get(SystemSetting, key)
    return row.value if row else default


def set_setting(db: Session, key: str, value: str) -> SystemSetting:
    begin_write(db)
    row = db.get(SystemSetting, key)
    if row is None:
        row = SystemSetting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
    db.commit()
    logger.info("Setting %s changed to %s", key, value)
    return row


def signups_enabled(db: Session) -> bool:
    # Registration stays open until an admin closes it.
    return get_setting(db, SIGNUPS_ENABLED, "true") == "true"


def toggle_signups(db: Session) -> bool:
    begin_write(db)
    enabled = not signups_enabled(db)
    set_setting(db, SIGNUPS_ENABLED, "true" if enabled else "false")
    return enabled
