"""Database layer - engine, base classes and column types for the relational mirror."""

from royalty_kernel.db.base import UUID, Base, TokenAmount, UUIDString
from royalty_kernel.db.engine import create_tables, get_engine, get_session_factory

__all__ = [
    "get_engine",
    "get_session_factory",
    "create_tables",
    "Base",
    "TokenAmount",
    "UUID",
    "UUIDString",
]
