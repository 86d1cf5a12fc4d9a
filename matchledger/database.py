import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


def _default_database_url() -> str:
    if os.getenv("VERCEL") == "1":
        # Vercel filesystem is ephemeral; /tmp is writable during invocation lifecycle.
        return "sqlite:////tmp/matchledger.db"
    return "sqlite:///./matchledger.db"


DATABASE_URL = os.getenv("DATABASE_URL", _default_database_url())
SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "15"))
SQLITE_IMMEDIATE = "sqlite_immediate"


def build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        pool_pre_ping=True,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record):
        # Hand transaction control to SQLAlchemy so BEGIN is emitted below, not lazily by pysqlite.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        # WAL lets dashboard reads proceed while a writer holds the lock.
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn):
        # Only writers ask for the lock up front; see ledger.begin_write.
        immediate = bool(conn.get_execution_options().get(SQLITE_IMMEDIATE))
        conn.info[SQLITE_IMMEDIATE] = immediate
        conn.exec_driver_sql("BEGIN IMMEDIATE" if immediate else "BEGIN")

    return engine


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
