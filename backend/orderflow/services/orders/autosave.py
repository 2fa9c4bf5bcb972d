"""
Debounced per-field autosave.

Every watched field (order field, or item field keyed by item id) has its own
debounce task and last-persisted value. A change restarts the field's quiet
window; when the window elapses the latest value is written unless it equals
what was last persisted. Oversized text is rejected before anything is
scheduled.
"""

import asyncio
from typing import Any, Optional, Union
from uuid import UUID

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger
from orderflow.services.notifications import NotificationService
from orderflow.services.orders.enums import ItemField, OrderField, Table
from orderflow.services.orders.errors import FieldTooLongError, PersistenceError, ValidationError
from orderflow.services.orders.history import HistoryRecorder
from orderflow.services.orders.realtime import EchoFlags
from orderflow.services.orders.store import RowStore, to_storage

logger = get_logger(__name__)

FieldKey = tuple[Optional[str], str]


class AutosaveFieldSync:
    """
    Persists field edits of one open order after a quiet window.

    Attributes:
        order_id: Order being edited
        quiet_window: Seconds of inactivity before a change is saved
        max_lengths: Per-field maximum text lengths
    """

    def __init__(
        self,
        store: RowStore,
        order_id: UUID,
        history: Optional[HistoryRecorder] = None,
        notifications: Optional[NotificationService] = None,
        actor_id: Optional[str] = None,
        echo_flags: Optional[EchoFlags] = None,
        quiet_window: Optional[float] = None,
        max_lengths: Optional[dict[str, int]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.order_id = order_id
        self.history = history or HistoryRecorder(store)
        self.notifications = notifications or NotificationService()
        self.actor_id = actor_id
        self.echo_flags = echo_flags
        self.quiet_window = quiet_window if quiet_window is not None else settings.autosave_quiet_window_seconds
        self.default_max_length = settings.autosave_max_text_length
        self.max_lengths = dict(max_lengths or {})
        self.closed = False

        self._tasks: dict[FieldKey, asyncio.Task] = {}
        self._pending: dict[FieldKey, Any] = {}
        self._persisted: dict[FieldKey, Any] = {}
        self._locks: dict[FieldKey, asyncio.Lock] = {}
        self._saving = 0

    @property
    def is_saving(self) -> bool:
        """True while any field write is in flight."""
        return self._saving > 0

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def watch(
        self,
        field: Union[OrderField, ItemField, str],
        initial: Any,
        item_id: Optional[UUID] = None,
    ) -> None:
        """Seed the last-persisted value of a field."""
        key = self._key(field, item_id)
        self._persisted[key] = initial

    def last_persisted(self, field: Union[OrderField, ItemField, str], item_id: Optional[UUID] = None) -> Any:
        return self._persisted.get(self._key(field, item_id))

    def accept_remote(
        self,
        field: Union[OrderField, ItemField, str],
        value: Any,
        item_id: Optional[UUID] = None,
    ) -> bool:
        """
        Adopt a value persisted by another editor.

        A pending local save for the field is dropped so it cannot overwrite
        the newer remote value.

        Returns:
            True if a pending local change was discarded
        """
        key = self._key(field, item_id)
        task = self._tasks.pop(key, None)
        if task is not None:
            task.cancel()
        discarded = key in self._pending
        self._pending.pop(key, None)
        self._persisted[key] = value
        return discarded

    def on_field_change(
        self,
        field: Union[OrderField, ItemField, str],
        value: Any,
        item_id: Optional[UUID] = None,
    ) -> None:
        """
        Register an edit and restart the field's quiet window.

        Args:
            field: Order field, or item field when ``item_id`` is given
            value: New value as typed by the user
            item_id: Item the field belongs to

        Raises:
            FieldTooLongError: If a text value exceeds its maximum length
            ValidationError: If the field cannot be autosaved
        """
        if self.closed:
            logger.warning("Change after autosave closed ignored", order_id=str(self.order_id))
            return

        key = self._key(field, item_id)
        self._check_length(key, value)

        existing = self._tasks.pop(key, None)
        if existing is not None:
            existing.cancel()

        self._pending[key] = value
        self._tasks[key] = asyncio.create_task(self._debounced(key))

    async def flush(self) -> None:
        """Save every pending change now instead of waiting for its window."""
        keys = list(self._pending)
        for key in keys:
            task = self._tasks.pop(key, None)
            if task is not None:
                task.cancel()
        await asyncio.gather(*(self._save(key) for key in keys))

    async def close(self) -> None:
        """Cancel pending saves; nothing fires after this returns."""
        self.closed = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._pending:
            logger.info(
                "Autosave closed with unsaved changes",
                order_id=str(self.order_id),
                dropped=len(self._pending),
            )
        self._pending.clear()

    def _key(self, field: Union[OrderField, ItemField, str], item_id: Optional[UUID]) -> FieldKey:
        if item_id is None:
            return (None, OrderField(field).value)
        item_field = ItemField(field)
        if item_field is ItemField.ITEM_STATUS:
            raise ValidationError(
                "Item status changes go through status transitions",
                order_id=str(self.order_id),
                item_id=str(item_id),
            )
        return (str(item_id), item_field.value)

    def _check_length(self, key: FieldKey, value: Any) -> None:
        if not isinstance(value, str):
            return
        field = key[1]
        max_length = self.max_lengths.get(field, self.default_max_length)
        if len(value) <= max_length:
            return

        self.notifications.error(
            "Value too long",
            f"{field} accepts at most {max_length} characters",
            order_id=str(self.order_id),
            field=field,
        )
        raise FieldTooLongError(
            f"{field} exceeds {max_length} characters",
            field=field,
            max_length=max_length,
            length=len(value),
            order_id=str(self.order_id),
        )

    async def _debounced(self, key: FieldKey) -> None:
        await asyncio.sleep(self.quiet_window)
        # Past the quiet window the save is no longer cancellable by new edits.
        self._tasks.pop(key, None)
        await self._save(key)

    async def _save(self, key: FieldKey) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key not in self._pending:
                return
            value = self._pending.pop(key)
            item_id, field = key

            if key in self._persisted and self._persisted[key] == value:
                logger.debug(
                    "Autosave skipped, value unchanged",
                    order_id=str(self.order_id),
                    item_id=item_id,
                    field=field,
                )
                return

            old_value = self._persisted.get(key)
            self._saving += 1
            try:
                if item_id is None:
                    saved = await self._write_order_field(field, old_value, value)
                else:
                    saved = await self._write_item_field(UUID(item_id), field, old_value, value)
            finally:
                self._saving -= 1

            if saved:
                self._persisted[key] = value

    async def _write_order_field(self, field: str, old_value: Any, value: Any) -> bool:
        try:
            await self.store.update(Table.ORDERS, self.order_id, {field: to_storage(value)})
        except PersistenceError as e:
            self._report_write_failure(field, None, e)
            return False

        failure = await self.history.record_order_change(
            self.order_id, field, old_value, value, self.actor_id
        )
        if failure is not None:
            self.notifications.warning("Change saved without history", failure.message, order_id=str(self.order_id))
        logger.info("Order field autosaved", order_id=str(self.order_id), field=field)
        return True

    async def _write_item_field(self, item_id: UUID, field: str, old_value: Any, value: Any) -> bool:
        self._arm(Table.ORDER_ITEMS)
        try:
            await self.store.update(Table.ORDER_ITEMS, item_id, {field: to_storage(value)})
        except PersistenceError as e:
            self._disarm(Table.ORDER_ITEMS)
            self._report_write_failure(field, item_id, e)
            return False

        self._arm(Table.ORDER_ITEM_HISTORY)
        failure = await self.history.record_item_change(
            self.order_id, item_id, field, old_value, value, self.actor_id
        )
        if failure is not None:
            self._disarm(Table.ORDER_ITEM_HISTORY)
            self.notifications.warning("Change saved without history", failure.message, order_id=str(self.order_id))
        logger.info("Item field autosaved", order_id=str(self.order_id), item_id=str(item_id), field=field)
        return True

    def _report_write_failure(self, field: str, item_id: Optional[UUID], error: PersistenceError) -> None:
        logger.error(
            "Autosave failed",
            order_id=str(self.order_id),
            item_id=str(item_id) if item_id else None,
            field=field,
            error=str(error),
        )
        self.notifications.error("Could not save change", str(error), order_id=str(self.order_id), field=field)

    def _arm(self, stream: Table) -> None:
        if self.echo_flags is not None:
            self.echo_flags.arm(stream)

    def _disarm(self, stream: Table) -> None:
        if self.echo_flags is not None:
            self.echo_flags.disarm(stream)
