"""
Module: royalty_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models of the
    relational mirror.  Provides the UUID primary key convention, the
    TokenAmount column type for whole-unit money, and the type annotation map.
Architecture position: Kernel > DB.  This is the lowest-level import target
    within the mirror.  ALL model files import from here.

Invariants enforced:
    - UUID primary keys: every model inherits a uuid4-generated primary key.
    - Exact money: amounts are Python ints of smallest units.  On PostgreSQL
      they are stored as NUMERIC(78, 0); on other dialects as a decimal
      string, so no backend ever rounds through a float.
    - Timestamps are timezone-aware.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import DateTime, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class TokenAmount(TypeDecorator):
    """
    Non-fractional amount of the smallest value unit, unbounded in size.

    Contract:
        Binds and returns Python ``int``.  PostgreSQL stores NUMERIC(78, 0),
        enough for any 256-bit quantity.  Other dialects store the decimal
        string, which keeps SQLite exact for values beyond 2**63.
    """

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return Decimal(int(value))
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class Base(DeclarativeBase):
    """
    Declarative base for all mirror models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


# Re-export UUID for convenience
UUID = PyUUID
