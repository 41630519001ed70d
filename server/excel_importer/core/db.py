"""Database engine/session helpers.

Engines are built explicitly by the process that owns them (the worker at
startup, the API at application start) and handed down to repositories and
loaders. Nothing here connects at import time.
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings


def create_db_engine(database_url: str, settings: Settings | None = None) -> Engine:
    """Create an engine with the pool and request timeout from settings."""

    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if settings is not None and not database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_pool_max_overflow,
            pool_timeout=settings.db_pool_timeout_seconds,
        )
        if database_url.startswith("postgresql"):
            # Per-statement ceiling for every batch insert issued through the pool
            kwargs["connect_args"] = {
                "options": f"-c statement_timeout={settings.db_statement_timeout_ms}"
            }
    return create_engine(database_url, **kwargs)


class Database:
    """Owns one engine and the session factory bound to it."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            class_=Session,
        )

    @classmethod
    def from_url(cls, database_url: str, settings: Settings | None = None) -> "Database":
        return cls(create_db_engine(database_url, settings))

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope for background tasks and scripts."""

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
