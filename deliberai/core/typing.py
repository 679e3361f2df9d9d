"""
Type helpers for SQLAlchemy/SQLModel compatibility with type checkers.

SQLModel fields are declared with Python types (e.g., `title: str`) but at the
class level they're InstrumentedAttribute descriptors with column methods like
.desc(), .is_(), .in_(). Type checkers see plain Python types and complain when
those methods are called; `col()` bridges that gap.
"""

from typing import TYPE_CHECKING, TypeVar
from datetime import datetime, timezone

if TYPE_CHECKING:
    from sqlalchemy.orm.attributes import InstrumentedAttribute

T = TypeVar("T")


def col(attr: T) -> "InstrumentedAttribute[T]":
    """
    Type helper for SQLAlchemy column operations in queries.

    At runtime this is a no-op - it just returns the input unchanged.

    Usage:
        select(IbisNode).order_by(col(IbisNode.created_at).desc())
    """
    return attr  # type: ignore[return-value]


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Use as default_factory in SQLModel fields.
    """
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Treat naive datetimes as UTC.

    SQLite drops tzinfo on round-trip, so timestamps read back from the
    database may be naive even though they were written aware.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
