"""SQLAlchemy engine and session management."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from services.documents.models import Base
from services.shared.config import Settings

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the configured URL.

    SQLite connections are shared across threads because blocking database
    work runs in worker threads; an in-memory SQLite database uses a single
    static connection so every session sees the same data.
    """
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class Database:
    """Owns the engine and hands out sessions.

    Usage:
        db = Database.from_settings(settings)
        with db.transaction() as session:
            session.add(obj)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(create_db_engine(settings.database_url, echo=settings.database_echo))

    def create_all(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(self.engine)
        logger.info("Database schema ready")

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Read-only style session; nothing is committed."""
        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session committed on success and rolled back on any error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
