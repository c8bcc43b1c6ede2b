import logging
from collections.abc import Generator
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from docflow.core.config import get_settings
from docflow.models.document import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)

    # Background export runs open their own session from a worker thread.
    sqlite_engine = create_engine(
        database_url,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(sqlite_engine, "connect")
    def _sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return sqlite_engine


_database_url = get_settings().database_url
engine: Optional[Engine] = build_engine(_database_url) if _database_url else None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def init_db() -> None:
    """Create the templates, documents and exports tables if missing."""
    if engine is None:
        logger.warning("DATABASE_URL is not configured; skipping table creation")
        return
    Base.metadata.create_all(bind=engine)


def get_session_factory() -> sessionmaker:
    """Session factory for work that outlives the request (background export runs)."""
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
