"""
Base model class and shared mixins for all database models.

Provides:
- BaseModel: integer primary key, UUID for external references,
  created/updated timestamps, to_dict() serialization
- SoftDeleteMixin: deleted_at timestamp for records that are hidden rather
  than removed (press runs, loads, lots, vessels, batches)
"""

import uuid as uuid_lib
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base, validates

from press_tracker.utils.datetime_utils import utc_now

Base = declarative_base()


def serialize_value(value: Any) -> Any:
    """
    Make a column value safe for JSON output.

    Datetimes and dates become ISO strings, Decimals become strings (so
    money keeps its scale) and enums become their values.
    """
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


class BaseModel(Base):
    """
    Abstract base model.

    Attributes:
        id: Integer primary key
        uuid: UUID string for references from outside the database
        created_at / updated_at: UTC timestamps maintained on write
    """

    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Stored as string for SQLite compatibility
    uuid = Column(
        String(36), unique=True, nullable=False, default=lambda: str(uuid_lib.uuid4()), index=True
    )

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self, exclude: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Convert the row's columns to a JSON-safe dictionary.

        Args:
            exclude: Column names to leave out

        Returns:
            {column name: serialized value}
        """
        skipped = set(exclude)
        return {
            column.name: serialize_value(getattr(self, column.name))
            for column in self.__table__.columns
            if column.name not in skipped
        }

    @validates("uuid")
    def _validate_uuid(self, _key: str, value: Any) -> str:
        if value is None:
            return value
        return str(value)

    def __repr__(self) -> str:
        label = getattr(self, "name", None)
        if label is not None:
            return f"{self.__class__.__name__}(id={self.id}, name='{label}')"
        return f"{self.__class__.__name__}(id={self.id})"


class SoftDeleteMixin:
    """
    Hide a record instead of deleting it.

    Soft-deleted rows stay in the database for provenance; service lookups
    filter on deleted_at IS NULL and treat them as not found.
    """

    deleted_at = Column(DateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def mark_deleted(self, when: Optional[datetime] = None) -> None:
        self.deleted_at = when or utc_now()
