"""
Module: billing_kernel.db.base
Responsibility: Declarative base classes for every billing ORM model.  Owns
    the UUID primary key convention, the type annotation map and the
    TrackedBase audit columns.
Architecture position: Kernel > DB.  Lowest-level import target in the
    kernel; MUST NOT import from models/, services/ or any module package.

Invariants enforced:
    - UUID primary keys on every table (uuid4, stored as String(36)).
    - Decimal maps to Numeric(38, 9).  Monetary amounts are never floats.
    - Datetimes are always timezone-aware UTC on the way out, whatever the
      backend (SQLite drops tzinfo on storage).

Failure modes:
    - ValueError when a naive datetime is bound to a UTCDateTime column.

Audit relevance:
    TrackedBase.created_at/updated_at/created_by_id/updated_by_id record who
    touched each subscription, settlement and queue row and when.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Actor recorded on rows written by the processor-driven pipeline.
SYSTEM_ACTOR_ID = PyUUID("00000000-0000-0000-0000-000000000001")


class UUIDString(TypeDecorator):
    """
    UUID stored as String(36) for cross-database portability.

    Guarantees:
        - UUID -> str on bind, str -> UUID on load.
        - cache_ok=True enables statement caching.
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


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime normalized to UTC.

    Contract:
        Only aware datetimes may be bound.  Values read back are always
        aware UTC, including on backends that store naive timestamps.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all billing models.

    Guarantees:
        - id is a uuid4 UUID stored as String(36).
        - Decimal -> Numeric(38, 9), datetime -> UTCDateTime,
          int -> BigInteger.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with audit timestamp and actor tracking.

    Guarantees:
        - created_at set by the database on INSERT, never changed.
        - updated_at refreshed on every UPDATE.
        - created_by_id is required.  Pipeline writes use SYSTEM_ACTOR_ID.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
        default=lambda: SYSTEM_ACTOR_ID,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )
