import json
import logging
from pathlib import Path

from sqlalchemy.orm import Session

from matchledger.models import AppUser, Profile
from matchledger.services.security import hash_password

logger = logging.getLogger(__name__)


def _seed_file_path() -> Path:
    return Path(__file__).resolve().parents[2] / "data" / "seed" / "profiles.json"


def create_profile_with_login(db: Session, fields: dict, password: str, is_admin: bool = False) -> Profile:
    profile = Profile(**fields, is_admin=is_admin)
    db.add(profile)
    db.flush()
    db.add(
        AppUser(
            email=profile.email,
            profile_id=profile.id,
            password_hash=hash_password(password),
            failed_attempts=0,
            locked_until=0,
        )
    )
    db.commit()
    db.refresh(profile)
    return profile


def ensure_admin_user(db: Session, admin_email: str, admin_password: str) -> Profile:
    existing = db.query(Profile).filter(Profile.email == admin_email).first()
    if existing:
        if not existing.is_admin:
            existing.is_admin = True
            db.commit()
        return existing
    fields = {
        "email": admin_email,
        "first_name": "Event",
        "last_name": "Admin",
        "company_name": "Organizers",
        "user_type": "investor",
    }
    logger.info("Creating admin profile %s", admin_email)
    return create_profile_with_login(db, fields, admin_password, is_admin=True)


def seed_demo_data_if_empty(db: Session, admin_email: str, admin_password: str, profile_bootstrap_password: str) -> bool:
    if db.query(Profile).filter(Profile.is_admin.is_(False)).count() > 0:
        ensure_admin_user(db, admin_email, admin_password)
        return False

    rows = json.loads(_seed_file_path().read_text())
    for row in rows:
        create_profile_with_login(db, row, profile_bootstrap_password)
    ensure_admin_user(db, admin_email, admin_password)
    logger.info("Seeded %s demo profiles", len(rows))
    return True
