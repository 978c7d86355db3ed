"""SQLAlchemy engine and session management."""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from hoa_democracy.core.config import Settings, get_settings
from hoa_democracy.obs import instrument_sqlalchemy_engine


def create_db_engine(database_url: str, *, settings: Settings | None = None) -> Engine:
    """Build an engine for ``database_url`` with the ledger's lock wait applied."""

    settings = settings or get_settings()
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        # Sessions cross threads under the API worker pool; busy waits stay bounded.
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.sqlite_busy_timeout_seconds,
        }
    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    if settings.enable_tracing:
        instrument_sqlalchemy_engine(engine)
    return engine


settings = get_settings()
engine = create_db_engine(settings.database_url, settings=settings)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_session(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["SessionLocal", "create_db_engine", "engine", "get_session"]
