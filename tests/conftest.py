import os
import tempfile
from pathlib import Path

# Must be set before matchledger modules read their configuration.
_TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="matchledger-tests-"))
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DB_DIR / 'api.db'}")
os.environ.setdefault("PASSWORD_ITERATIONS", "1000")

import pytest
from sqlalchemy.orm import sessionmaker

from matchledger.database import Base, build_engine
from matchledger.models import Profile


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_profile(db):
    def _make(user_type: str, name: str, **fields) -> Profile:
        row = Profile(
            email=f"{name.lower().replace(' ', '.')}@example.com",
            first_name=name,
            company_name=fields.pop("company_name", f"{name} Co"),
            user_type=user_type,
            **fields,
        )
        db.add(row)
        db.commit()
        return row

    return _make
