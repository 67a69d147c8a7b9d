"""
Database connection utilities.

The engine lives on an explicitly constructed ``Database`` handle that is opened
at process start and closed at shutdown, then passed to every component that
needs persistence.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from devsandbox.common import settings


class Database:
    """Owns the SQLAlchemy engine and session factory for one process."""

    def __init__(self, url: str | None = None, engine: Engine | None = None):
        self.url = url or settings.DB_URL
        self._engine: Engine | None = engine
        self._session_factory: sessionmaker[Session] | None = None
        if engine is not None:
            self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> "Database":
        """Create the engine. Calling open() twice is a no-op."""
        if self._engine is not None:
            return self

        kwargs: dict = {"pool_pre_ping": True}
        if self.url.startswith("sqlite"):
            # SQLite connections are used from the threadpool as well as the event loop
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.url or self.url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_recycle"] = 3600  # Recycle connections after 1 hour

        self._engine = create_engine(self.url, **kwargs)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

    def create_all(self) -> None:
        from devsandbox.common.db.models import Base

        Base.metadata.create_all(self.engine)

    @contextmanager
    def make_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on success, rolls back on error, always closes.
        """
        if self._session_factory is None:
            raise RuntimeError("Database is not open")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

