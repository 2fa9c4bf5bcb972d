"""
Declarative base and mixins for the lifecycle tables.

Mutable rows (orders, items, order type config) derive from ``BaseModel``
and carry ``created_at``/``updated_at``; history rows derive from
``AppendOnlyModel`` and carry only the timestamp of the event they record.
Both convert to and from the plain row dictionaries the row store speaks.
"""

import uuid
from datetime import datetime
from typing import Any, Optional, Type, TypeVar

from sqlalchemy import DateTime, MetaData, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

T = TypeVar("T", bound="Base")

# Keys and foreign keys keep the PostgreSQL default names
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
}


class Base(AsyncAttrs, DeclarativeBase):
    """Declarative base with row dictionary conversion."""

    __abstract__ = True
    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    @classmethod
    def column_names(cls) -> set[str]:
        return {column.name for column in cls.__table__.columns}

    def to_row(self) -> dict[str, Any]:
        """Return the column values keyed by column name."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    @classmethod
    def from_row(cls: Type[T], row: dict[str, Any]) -> T:
        """
        Build an instance from a row dictionary.

        Keys that are not columns are dropped, so domain rows carrying
        derived values can be passed as they are.
        """
        columns = cls.column_names()
        return cls(**{key: value for key, value in row.items() if key in columns})

    def __repr__(self) -> str:
        identity = getattr(self, "id", None)
        return f"<{type(self).__name__}(id={identity!r})>"


class UUIDMixin:
    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            UUID(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            comment="Row identifier",
        )


class TimestampMixin:
    """Database-managed creation and modification timestamps."""

    @declared_attr
    def created_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
        )

    @declared_attr
    def updated_at(cls) -> Mapped[datetime]:
        return mapped_column(
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        )


class BaseModel(Base, UUIDMixin, TimestampMixin):
    """Mutable row with UUID key and timestamps."""

    __abstract__ = True


class AppendOnlyModel(Base, UUIDMixin):
    """History row; written once and never updated."""

    __abstract__ = True


def create_table_args(*constraints: Any, comment: Optional[str] = None) -> tuple:
    """Build ``__table_args__`` from indexes and constraints plus a table comment."""
    options = {"comment": comment} if comment else {}
    return (*constraints, options)
