"""
SQLAlchemy engine and session factory.

The engine is built lazily from ``VerificationSettings.DATABASE_URL`` so that
importing the models never opens a connection.

Usage:
    from db.engine import get_session_factory

    SessionLocal = get_session_factory()
    with SessionLocal() as db:
        signup = db.query(WaitlistSignup).first()
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from verification.config import settings

# Base class for all models
Base = declarative_base()

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def create_db_engine(url: str, echo: bool = False, pool_size: int = 10) -> Engine:
    """Create an engine with connection pooling (SQLite keeps its default pool)."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo)
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before use
        pool_size=pool_size,
        max_overflow=pool_size * 2,
        echo=echo,
    )


def get_engine() -> Engine:
    """Get the shared SQLAlchemy engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine(settings.DATABASE_URL, settings.DB_ECHO, settings.DB_POOL_SIZE)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory
