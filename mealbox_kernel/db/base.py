"""
Declarative base and column types shared by every mealbox ORM model.

Kernel > DB: imported by every ``orm.py``; imports nothing from outer layers.

Column conventions carried by ``Base.type_annotation_map``:

- ``UUID`` columns are stored as 36-character strings, so the same schema
  runs on PostgreSQL and SQLite.
- ``Decimal`` columns are ``Numeric(38, 9)``.  Prices, invoice totals and
  global credit amounts are never floats.
- ``datetime`` columns are UTC on write and timezone-aware on read.
- ``int`` columns are ``BigInteger``.

``TrackedBase.created_at`` orders the slot credit ledger for FIFO
consumption, so services stamp it from the injected Clock rather than
leaving it to the server default.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive values; they were written as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UUIDString(TypeDecorator):
    """``uuid.UUID`` on the Python side, ``VARCHAR(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(str(value))


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    Comparisons against ``Clock.now()`` never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return _as_utc(value)

    def process_result_value(self, value, dialect):
        return _as_utc(value)


class Base(DeclarativeBase):
    """Root of the mealbox mapping; every table gets a uuid4 ``id``."""

    type_annotation_map: ClassVar[dict] = {
        PyUUID: UUIDString(),
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Adds who-and-when columns.

    ``created_by_id`` is required: writes made by a job carry the system
    actor id.  ``updated_at`` is refreshed by the database on every UPDATE.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(),
    )
    created_by_id: Mapped[PyUUID]
    updated_by_id: Mapped[PyUUID | None]


UUID = PyUUID
