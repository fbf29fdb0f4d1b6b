"""Persistence layer: async engine, ORM models and repositories."""

from .session import Base, SessionFactory, build_engine, build_session_factory, create_tables, drop_tables

__all__ = [
    "Base",
    "SessionFactory",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "drop_tables",
]
