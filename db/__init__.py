"""
Database module for the waitlist.

Provides SQLAlchemy models and the engine used by the PostgreSQL signup store.
"""

from db.engine import Base, create_db_engine, get_engine, get_session_factory

__all__ = ["Base", "create_db_engine", "get_engine", "get_session_factory"]
