"""Database session factory and configuration.

Provides database connectivity and session management for the integration
service. Repositories receive a session factory rather than a session so
each unit of work opens and closes its own transaction.
"""

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from config import get_settings


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Create an engine with connection pooling.

    Pool settings only apply to PostgreSQL (not SQLite).
    """
    settings = get_settings()
    url = database_url or settings.DATABASE_URL

    engine_kwargs = {
        "pool_pre_ping": True,
        "echo": False,
    }
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = settings.DB_POOL_SIZE
        engine_kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
        engine_kwargs["pool_timeout"] = settings.DB_POOL_TIMEOUT
        engine_kwargs["pool_recycle"] = settings.DB_POOL_RECYCLE
    else:
        engine_kwargs["connect_args"] = {"check_same_thread": False}

    return create_engine(url, **engine_kwargs)


def build_session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


_session_factory: Optional[Callable[[], Session]] = None


def get_session_factory() -> Callable[[], Session]:
    """Lazily create the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(build_engine())
    return _session_factory


@contextmanager
def session_scope(
    session_factory: Optional[Callable[[], Session]] = None,
) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with session_scope() as session:
            session.query(IntegrationConnection).all()

    Automatically commits on success, rolls back on exception.
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
