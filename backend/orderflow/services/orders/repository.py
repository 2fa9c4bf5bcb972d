"""
PostgreSQL row store.

This module implements SqlAlchemyRowStore, the production ``RowStore``. Each
call opens its own session and commits it; there is no transaction spanning
calls. Driver errors are wrapped in ``StoreError`` and successful writes are
published to the change feed.
"""

from typing import Any, Iterable, Optional, Type

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.logging import get_logger
from orderflow.database.base import Base
from orderflow.database.connection import get_session
from orderflow.database.models.order import (
    Order,
    OrderChange,
    OrderComment,
    OrderCompletionNote,
    OrderItem,
    OrderItemHistory,
    OrderStatusHistory,
    OrderTypeConfig,
)
from orderflow.realtime.events import ChangeFeed, ChangeType
from orderflow.services.orders.enums import Table
from orderflow.services.orders.errors import StoreError
from orderflow.services.orders.store import (
    Row,
    RowId,
    TableLike,
    publish_change,
    table_name,
    to_storage,
)

logger = get_logger(__name__)

TABLE_MODELS: dict[str, Type[Base]] = {
    Table.ORDERS.value: Order,
    Table.ORDER_ITEMS.value: OrderItem,
    Table.ORDER_HISTORY.value: OrderStatusHistory,
    Table.ORDER_ITEM_HISTORY.value: OrderItemHistory,
    Table.ORDER_CHANGES.value: OrderChange,
    Table.ORDER_COMPLETION_NOTES.value: OrderCompletionNote,
    Table.ORDER_COMMENTS.value: OrderComment,
    Table.ORDER_TYPE_CONFIG.value: OrderTypeConfig,
}


class SqlAlchemyRowStore:
    """
    Row store over the async SQLAlchemy engine.

    Provides get/select/update/insert keyed by table name with one committed
    session per call and structured logging of every failure.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None, session_factory=get_session):
        """
        Initialize the row store.

        Args:
            feed: Change feed to publish successful writes to
            session_factory: Async context manager yielding a session that
                commits on exit
        """
        self.feed = feed
        self._session = session_factory

    async def get(self, table: TableLike, row_id: RowId) -> Optional[Row]:
        model = self._model(table)
        try:
            async with self._session() as session:
                instance = await session.get(model, row_id)
                return instance.to_row() if instance is not None else None
        except SQLAlchemyError as e:
            raise self._wrap("get", table, e, row_id=str(row_id)) from e

    async def select(
        self,
        table: TableLike,
        *,
        eq: Optional[dict[str, Any]] = None,
        in_: Optional[dict[str, Iterable[Any]]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        model = self._model(table)
        stmt = select(model)
        for key, value in (eq or {}).items():
            stmt = stmt.where(getattr(model, key) == to_storage(value))
        for key, values in (in_ or {}).items():
            stmt = stmt.where(getattr(model, key).in_([to_storage(v) for v in values]))
        if order_by:
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                return [instance.to_row() for instance in result.scalars().all()]
        except SQLAlchemyError as e:
            raise self._wrap("select", table, e) from e

    async def update(self, table: TableLike, row_id: RowId, values: dict[str, Any]) -> Row:
        model = self._model(table)
        try:
            async with self._session() as session:
                instance = await session.get(model, row_id)
                if instance is None:
                    raise StoreError(
                        f"Row {row_id} not found in {table_name(table)}",
                        table=table_name(table),
                        row_id=str(row_id),
                    )
                old = instance.to_row()
                await session.execute(
                    update(model)
                    .where(model.id == row_id)
                    .values(**to_storage(dict(values)))
                )
                await session.refresh(instance)
                new = instance.to_row()
        except SQLAlchemyError as e:
            raise self._wrap("update", table, e, row_id=str(row_id)) from e

        logger.debug("Row updated", table=table_name(table), row_id=str(row_id), fields=list(values))
        await publish_change(self.feed, table, ChangeType.UPDATE, new, old)
        return new

    async def insert(self, table: TableLike, values: dict[str, Any]) -> Row:
        model = self._model(table)
        data = {
            key: value
            for key, value in to_storage(dict(values)).items()
            if value is not None or not _has_server_default(model, key)
        }
        try:
            async with self._session() as session:
                instance = model.from_row(data)
                session.add(instance)
                await session.flush()
                await session.refresh(instance)
                new = instance.to_row()
        except SQLAlchemyError as e:
            raise self._wrap("insert", table, e) from e

        logger.debug("Row inserted", table=table_name(table), row_id=str(new.get("id")))
        await publish_change(self.feed, table, ChangeType.INSERT, new)
        return new

    @staticmethod
    def _model(table: TableLike) -> Type[Base]:
        try:
            return TABLE_MODELS[table_name(table)]
        except KeyError:
            raise StoreError(f"Unknown table {table_name(table)}", table=table_name(table))

    @staticmethod
    def _wrap(operation: str, table: TableLike, error: SQLAlchemyError, **context: Any) -> StoreError:
        logger.error(
            "Row store operation failed",
            operation=operation,
            table=table_name(table),
            error=str(error),
            error_type=type(error).__name__,
            **context,
        )
        return StoreError(
            f"{operation} on {table_name(table)} failed",
            operation=operation,
            table=table_name(table),
            **context,
        )


def _has_server_default(model: Type[Base], key: str) -> bool:
    column = model.__table__.columns.get(key)
    return column is not None and column.server_default is not None
