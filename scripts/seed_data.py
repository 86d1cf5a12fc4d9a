import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from matchledger.database import Base, SessionLocal, engine
from matchledger.services.bootstrap import create_profile_with_login, ensure_admin_user

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@matchledger.local")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin-change-me")
PROFILE_BOOTSTRAP_PASSWORD = os.getenv("PROFILE_BOOTSTRAP_PASSWORD", "profile-change-me")


def seed():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        source = ROOT / "data" / "seed" / "profiles.json"
        rows = json.loads(source.read_text())
        for row in rows:
            create_profile_with_login(db, row, PROFILE_BOOTSTRAP_PASSWORD)
        ensure_admin_user(db, ADMIN_EMAIL, ADMIN_PASSWORD)
        print(
            f"Seeded {len(rows)} profiles plus admin {ADMIN_EMAIL} "
            f"(profile logins use PROFILE_BOOTSTRAP_PASSWORD)."
        )
    finally:
        db.close()


if __name__ == "__main__":
    seed()
