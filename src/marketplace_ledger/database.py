"""Database connection, session management and upsert helpers."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from marketplace_ledger.config import get_settings

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine
    from sqlalchemy.sql.dml import Insert


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False, connect_args={"check_same_thread": False})

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection: Any, _record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        return engine
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db(database_url: str | None = None) -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory."""
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine(database_url)
        _session_factory = make_session_factory(_engine)
    assert _session_factory is not None
    return _engine, _session_factory


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory used by the app, the CLI and tests."""
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


def create_schema(engine: Engine) -> None:
    """Create all tables and seed the chart of accounts."""
    from marketplace_ledger.models import Base
    from marketplace_ledger.services.journal import seed_chart_of_accounts

    Base.metadata.create_all(engine)
    with Session(engine) as session:
        seed_chart_of_accounts(session)
        session.commit()


def reset_db() -> None:
    """Dispose the global engine (tests and CLI re-init)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Get a database session."""
    _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


def insert_ignore(session: Session, entity: Any) -> Insert:
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    Caller supplies ``.values(...)`` and the conflict target via
    ``on_conflict_do_nothing(index_elements=[...])``.
    """
    # Core insert against the Table: column names as keys, plain rowcount.
    table = getattr(entity, "__table__", entity)
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"Unsupported dialect for insert-or-ignore: {dialect}")
