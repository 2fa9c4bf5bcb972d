"""
Row store interface and in-memory implementation.

The lifecycle services talk to persistence through a small, table-keyed row
store: get, select with equality filters, update by id and insert. Each call
is independent; there is no cross-table transaction. After every successful
write the store publishes a ``ChangeEvent`` to its change feed, if one is
attached, so other editors of the same order can reconcile.
"""

import asyncio
import copy
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional, Protocol, Union

from orderflow.core.logging import get_logger
from orderflow.realtime.events import ChangeEvent, ChangeFeed, ChangeType
from orderflow.services.orders.enums import Table
from orderflow.services.orders.errors import StoreError

logger = get_logger(__name__)

Row = dict[str, Any]
RowId = Union[uuid.UUID, str]
TableLike = Union[Table, str]


class RowStore(Protocol):
    """Table-keyed row persistence used by the lifecycle services."""

    async def get(self, table: TableLike, row_id: RowId) -> Optional[Row]:
        ...

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
        ...

    async def update(self, table: TableLike, row_id: RowId, values: dict[str, Any]) -> Row:
        ...

    async def insert(self, table: TableLike, values: dict[str, Any]) -> Row:
        ...


def table_name(table: TableLike) -> str:
    return table.value if isinstance(table, Table) else table


def order_id_of(table: TableLike, row: Row) -> str:
    """Return the id of the order a row belongs to."""
    if table_name(table) == Table.ORDERS.value:
        return str(row.get("id"))
    return str(row.get("order_id"))


def to_storage(value: Any) -> Any:
    """Normalize a value to the shape the database would return."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [to_storage(v) for v in value]
    if isinstance(value, dict):
        return {k: to_storage(v) for k, v in value.items()}
    return value


def _comparable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


async def publish_change(
    feed: Optional[ChangeFeed],
    table: TableLike,
    change_type: ChangeType,
    new: Row,
    old: Optional[Row] = None,
) -> None:
    """Publish a row change; feed failures are logged, never raised."""
    if feed is None:
        return

    event = ChangeEvent(
        table=table_name(table),
        change_type=change_type,
        order_id=order_id_of(table, new),
        row_id=str(new.get("id")) if new.get("id") is not None else None,
        new=new,
        old=old or {},
    )
    try:
        await feed.publish(event)
    except Exception as e:
        logger.error(
            "Failed to publish change event",
            table=event.table,
            order_id=event.order_id,
            error=str(e),
            error_type=type(e).__name__,
        )


class InMemoryRowStore:
    """
    Row store backed by process memory.

    Used by the development backend and tests. Supports injected failures
    (``fail_on``) and holding writes open (``pause_writes``) so failure and
    concurrency paths can be exercised deterministically.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed
        self._tables: dict[str, dict[str, Row]] = {}
        self._failures: set[tuple[str, str]] = set()
        self._write_gate: Optional[asyncio.Event] = None
        self.calls: list[tuple[str, str]] = []

    def seed(self, table: TableLike, rows: Iterable[dict[str, Any]]) -> None:
        """Load rows without publishing change events."""
        bucket = self._tables.setdefault(table_name(table), {})
        for values in rows:
            row = to_storage(dict(values))
            row.setdefault("id", uuid.uuid4())
            bucket[str(row["id"])] = row

    def rows(self, table: TableLike) -> list[Row]:
        """Return copies of every row in a table, in insertion order."""
        return [copy.deepcopy(row) for row in self._tables.get(table_name(table), {}).values()]

    def fail_on(self, operation: str, table: TableLike) -> None:
        """Make every subsequent ``operation`` on ``table`` raise ``StoreError``."""
        self._failures.add((operation, table_name(table)))

    def recover(self) -> None:
        self._failures.clear()

    def pause_writes(self) -> None:
        """Block writes until ``resume_writes`` is called."""
        self._write_gate = asyncio.Event()

    def resume_writes(self) -> None:
        if self._write_gate is not None:
            self._write_gate.set()
            self._write_gate = None

    async def get(self, table: TableLike, row_id: RowId) -> Optional[Row]:
        self._check("get", table)
        row = self._tables.get(table_name(table), {}).get(str(row_id))
        return copy.deepcopy(row) if row is not None else None

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
        self._check("select", table)
        result = []
        for row in self._tables.get(table_name(table), {}).values():
            if eq and any(
                _comparable(row.get(key)) != _comparable(value) for key, value in eq.items()
            ):
                continue
            if in_ and any(
                _comparable(row.get(key)) not in {_comparable(v) for v in values}
                for key, values in in_.items()
            ):
                continue
            result.append(copy.deepcopy(row))

        if order_by:
            result.sort(
                key=lambda r: (r.get(order_by) is None, r.get(order_by)),
                reverse=descending,
            )
        if limit is not None:
            result = result[:limit]
        return result

    async def update(self, table: TableLike, row_id: RowId, values: dict[str, Any]) -> Row:
        await self._wait_for_writes()
        self._check("update", table)
        bucket = self._tables.get(table_name(table), {})
        current = bucket.get(str(row_id))
        if current is None:
            raise StoreError(
                f"Row {row_id} not found in {table_name(table)}",
                table=table_name(table),
                row_id=str(row_id),
            )

        old = copy.deepcopy(current)
        current.update(to_storage(dict(values)))
        if "updated_at" in current:
            current["updated_at"] = datetime.now(timezone.utc)

        new = copy.deepcopy(current)
        await publish_change(self.feed, table, ChangeType.UPDATE, new, old)
        return new

    async def insert(self, table: TableLike, values: dict[str, Any]) -> Row:
        await self._wait_for_writes()
        self._check("insert", table)
        row = to_storage(dict(values))
        row.setdefault("id", uuid.uuid4())
        self._tables.setdefault(table_name(table), {})[str(row["id"])] = row

        new = copy.deepcopy(row)
        await publish_change(self.feed, table, ChangeType.INSERT, new)
        return new

    async def _wait_for_writes(self) -> None:
        if self._write_gate is not None:
            await self._write_gate.wait()

    def _check(self, operation: str, table: TableLike) -> None:
        name = table_name(table)
        self.calls.append((operation, name))
        if (operation, name) in self._failures:
            logger.warning("Injected store failure", operation=operation, table=name)
            raise StoreError(
                f"{operation} on {name} failed",
                operation=operation,
                table=name,
            )
