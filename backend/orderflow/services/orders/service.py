"""
Order service and edit sessions.

``OrderService`` is the entry point used by the API: it loads orders from the
row store, runs transitions through the TransitionEngine and opens
``OrderEditSession`` objects. A session is one editor's view of one order:
it owns the autosave, the unsaved-change tracker and the realtime
reconciler, and routes its writes through the shared engine so echo flags
and the single-flight gate apply.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import bind_order_context, get_logger
from orderflow.realtime.events import ChangeEvent, ChangeFeed
from orderflow.services.notifications import NotificationService
from orderflow.services.orders.authorization import AllowAllPhases, PhaseAuthorizer
from orderflow.services.orders.autosave import AutosaveFieldSync
from orderflow.services.orders.enums import (
    ItemField,
    ItemStatus,
    OrderCategory,
    OrderField,
    OrderStatus,
    Phase,
    Priority,
    Table,
)
from orderflow.services.orders.errors import (
    ItemsLockedError,
    OrderItemNotFoundError,
    OrderNotFoundError,
    PersistenceError,
    UnreadableOrderError,
    ValidationError,
)
from orderflow.services.orders.history import HistoryRecorder
from orderflow.services.orders.models import Order, OrderItem
from orderflow.services.orders.phases import group_by_phase, phases_for_category
from orderflow.services.orders.realtime import EchoFlags, RealtimeReconciler
from orderflow.services.orders.state_machine import (
    ItemStatusResult,
    SingleFlightGate,
    TransitionContext,
    TransitionEngine,
    TransitionResult,
    utcnow,
)
from orderflow.services.orders.store import RowStore
from orderflow.services.orders.unsaved_changes import CloseDecision, UnsavedChangesTracker

logger = get_logger(__name__)

AUTOSAVED_ITEM_FIELDS: tuple[ItemField, ...] = tuple(
    field for field in ItemField if field is not ItemField.ITEM_STATUS
)


class SessionOptions(BaseModel):
    """Per-session state passed explicitly at open time."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    active_tab: str = "details"
    actor_id: Optional[str] = None
    authorizer: PhaseAuthorizer = Field(default_factory=AllowAllPhases)
    subscribe: bool = True


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class OrderService:
    """
    Order lifecycle operations over a row store.

    Attributes:
        store: Row store for every table
        feed: Change feed sessions subscribe to; sessions run without
            realtime when None
        engine: Transition engine shared by every session
        notifications: User notification service
    """

    def __init__(
        self,
        store: RowStore,
        feed: Optional[ChangeFeed] = None,
        notifications: Optional[NotificationService] = None,
        gate: Optional[SingleFlightGate] = None,
        settings: Optional[Settings] = None,
        clock=utcnow,
    ):
        self.store = store
        self.feed = feed
        self.settings = settings or get_settings()
        self.notifications = notifications or NotificationService()
        self.history = HistoryRecorder(store)
        self.clock = clock
        self.engine = TransitionEngine(
            store,
            history=self.history,
            notifications=self.notifications,
            gate=gate,
            settings=self.settings,
            clock=clock,
        )

        logger.info(
            "OrderService initialized",
            store=type(store).__name__,
            has_feed=feed is not None,
        )

    # Reads

    async def get_order(self, order_id: Union[uuid.UUID, str]) -> Order:
        """
        Load an order with its items.

        Raises:
            OrderNotFoundError: If no order has this id
            UnreadableOrderError: If the stored order or one of its items
                holds an undeclared status or enum value
        """
        row = await self.store.get(Table.ORDERS, order_id)
        if row is None:
            raise OrderNotFoundError(f"Order {order_id} not found", order_id=str(order_id))
        items = await self.store.select(Table.ORDER_ITEMS, eq={"order_id": order_id}, order_by="item_code")
        try:
            return Order.from_row(row, items)
        except PydanticValidationError as e:
            fields = sorted({".".join(str(part) for part in error["loc"]) for error in e.errors()})
            logger.error("Stored order is unreadable", order_id=str(order_id), fields=fields)
            raise UnreadableOrderError(
                f"Order {order_id} holds undeclared values",
                order_id=str(order_id),
                fields=fields,
            ) from e

    async def board(
        self,
        order_category: Optional[Union[OrderCategory, str]] = None,
    ) -> dict[Phase, list[dict[str, Any]]]:
        """
        Group order rows into phase columns.

        Rows are grouped by their raw status so an unrecognized value lands in
        the default column instead of failing the whole board.
        """
        eq = None
        if order_category is not None:
            eq = {"order_category": OrderCategory(order_category).value}
        rows = await self.store.select(Table.ORDERS, eq=eq, order_by="created_at", descending=True)
        columns = group_by_phase(rows)
        visible = phases_for_category(order_category) if order_category is not None else list(columns)
        return {phase: columns[phase] for phase in visible}

    async def days_in_phase(self, order_ids: Iterable[Union[uuid.UUID, str]]) -> dict[str, int]:
        """
        Whole days each order has spent in its current status.

        Counts from the latest history entry whose new status equals the
        current status, falling back to the order's creation time.
        """
        ids = [str(order_id) for order_id in order_ids]
        if not ids:
            return {}

        orders = await self.store.select(Table.ORDERS, in_={"id": ids})
        history = await self.store.select(
            Table.ORDER_HISTORY,
            in_={"order_id": ids},
            order_by="changed_at",
            descending=True,
        )

        entered: dict[tuple[str, str], datetime] = {}
        for entry in history:
            key = (str(entry["order_id"]), entry.get("new_status"))
            entered.setdefault(key, _parse_timestamp(entry.get("changed_at")))

        now = self.clock()
        result: dict[str, int] = {}
        for row in orders:
            order_id = str(row["id"])
            since = entered.get((order_id, row.get("status"))) or _parse_timestamp(row.get("created_at"))
            result[order_id] = max((now - since).days, 0) if since else 0
        return result

    # Writes

    async def create_order(
        self,
        customer_name: str,
        items: list[dict[str, Any]],
        order_type: str = "standard",
        order_category: Union[OrderCategory, str] = OrderCategory.SALES,
        delivery_address: str = "",
        priority: Union[Priority, str] = Priority.MEDIUM,
        delivery_date: Optional[Any] = None,
        notes: Optional[str] = None,
        order_number: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Order:
        """
        Create an order together with its items.

        Args:
            customer_name: Customer the order is for
            items: Item payloads with ``item_code`` and quantities
            order_type: Order type, used for SLA lookup
            order_category: ``sales`` or ``stock``
            delivery_address: Free-text delivery address
            priority: Order priority
            delivery_date: Delivery deadline
            notes: Free-text notes
            order_number: Explicit order number, generated when omitted
            actor_id: User creating the order

        Returns:
            The created order

        Raises:
            ValidationError: If the order has no items
            PersistenceError: If the order row cannot be written
        """
        if not items:
            raise ValidationError("Order must contain at least one item", item_count=0)

        order = Order(
            order_number=order_number or self._generate_order_number(),
            order_type=order_type,
            order_category=OrderCategory(order_category),
            customer_name=customer_name,
            delivery_address=delivery_address,
            priority=Priority(priority),
            delivery_date=delivery_date,
            notes=notes,
            created_at=self.clock(),
        )
        order.items = [OrderItem(order_id=order.id, **item) for item in items]

        logger.info(
            "Creating order",
            order_id=str(order.id),
            order_number=order.order_number,
            item_count=len(order.items),
            actor_id=actor_id,
        )

        await self.store.insert(Table.ORDERS, order.to_row())
        for item in order.items:
            await self.store.insert(Table.ORDER_ITEMS, item.to_row())

        await self.history.record_status_change(
            order.id, None, order.status, actor_id, notes="Order created"
        )
        self.notifications.success("Order created", f"Order {order.order_number} created", order_id=str(order.id))
        return order

    async def change_status(
        self,
        order_id: Union[uuid.UUID, str],
        target: Union[OrderStatus, str],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        order = await self.get_order(order_id)
        return await self.engine.transition(order, target, context)

    async def move_order_to_phase(
        self,
        order_id: Union[uuid.UUID, str],
        phase: Union[Phase, str],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        order = await self.get_order(order_id)
        return await self.engine.drop_on_phase(order, phase, context)

    async def change_item_status(
        self,
        order_id: Union[uuid.UUID, str],
        item_id: uuid.UUID,
        new_status: Union[ItemStatus, str],
        context: Optional[TransitionContext] = None,
    ) -> ItemStatusResult:
        order = await self.get_order(order_id)
        return await self.engine.change_item_status(order, item_id, new_status, context)

    async def add_item(
        self,
        order: Order,
        values: dict[str, Any],
        actor_id: Optional[str] = None,
        echo_flags: Optional[EchoFlags] = None,
    ) -> OrderItem:
        """
        Add an item to an order in an early phase.

        Raises:
            ItemsLockedError: If the order is past the early phases
            PersistenceError: If the item row cannot be written
        """
        self._ensure_items_editable(order)
        item = OrderItem(order_id=order.id, **values)

        if echo_flags is not None:
            echo_flags.arm(Table.ORDER_ITEMS)
        try:
            await self.store.insert(Table.ORDER_ITEMS, item.to_row())
        except PersistenceError:
            if echo_flags is not None:
                echo_flags.disarm(Table.ORDER_ITEMS)
            self.notifications.error("Could not add item", order_id=str(order.id))
            raise

        order.items.append(item)
        await self._record_item_event(order, item, "added", actor_id, echo_flags)
        logger.info("Item added", order_id=str(order.id), item_id=str(item.id), item_code=item.item_code)
        return item

    async def remove_item(
        self,
        order: Order,
        item_id: uuid.UUID,
        actor_id: Optional[str] = None,
        echo_flags: Optional[EchoFlags] = None,
    ) -> OrderItem:
        """
        Soft-remove an item from an order in an early phase.

        Raises:
            ItemsLockedError: If the order is past the early phases
            OrderItemNotFoundError: If the item is not on the order
        """
        self._ensure_items_editable(order)
        item = order.find_item(item_id)
        if item is None or item.is_removed:
            raise OrderItemNotFoundError(
                f"Item {item_id} not found on order {order.order_number}",
                order_id=str(order.id),
                item_id=str(item_id),
            )

        if echo_flags is not None:
            echo_flags.arm(Table.ORDER_ITEMS)
        try:
            await self.store.update(Table.ORDER_ITEMS, item.id, {"is_removed": True})
        except PersistenceError:
            if echo_flags is not None:
                echo_flags.disarm(Table.ORDER_ITEMS)
            self.notifications.error("Could not remove item", order_id=str(order.id))
            raise

        item.is_removed = True
        await self._record_item_event(order, item, "removed", actor_id, echo_flags)
        logger.info("Item removed", order_id=str(order.id), item_id=str(item.id))
        return item

    async def open_session(
        self,
        order_id: Union[uuid.UUID, str],
        options: Optional[SessionOptions] = None,
    ) -> "OrderEditSession":
        """Load an order and open an edit session on it."""
        order = await self.get_order(order_id)
        session = OrderEditSession(self, order, options or SessionOptions())
        await session.start()
        return session

    def _ensure_items_editable(self, order: Order) -> None:
        if order.phase.value not in self.settings.early_phases:
            raise ItemsLockedError(
                f"Items cannot change once the order is in {order.phase.value}",
                order_id=str(order.id),
                phase=order.phase.value,
            )

    async def _record_item_event(
        self,
        order: Order,
        item: OrderItem,
        action: str,
        actor_id: Optional[str],
        echo_flags: Optional[EchoFlags],
    ) -> None:
        if echo_flags is not None:
            echo_flags.arm(Table.ORDER_ITEM_HISTORY)
        failure = await self.history.record_item_change(
            order.id, item.id, "item", None, item.item_code, actor_id, notes=f"Item {action}"
        )
        if failure is not None:
            if echo_flags is not None:
                echo_flags.disarm(Table.ORDER_ITEM_HISTORY)
            self.notifications.warning("Change saved without history", failure.message, order_id=str(order.id))

    def _generate_order_number(self) -> str:
        timestamp = self.clock().strftime("%Y%m%d%H%M%S")
        random_suffix = uuid.uuid4().hex[:6].upper()
        return f"ORD-{timestamp}-{random_suffix}"


class OrderEditSession:
    """
    One editor's open view of one order.

    Attributes:
        order: Live order model, mutated by edits and reloads
        options: Session options given at open time
        tracker: Unsaved change tracker seeded at open
        autosave: Debounced field persistence
        reconciler: Realtime reconciler, None when the service has no feed
        status_history: Last loaded ``order_history`` rows, newest first
        item_history: Last loaded ``order_item_history`` rows, newest first
    """

    def __init__(self, service: OrderService, order: Order, options: SessionOptions):
        self.service = service
        self.order = order
        self.options = options
        self.is_open = True
        self.echo_flags = EchoFlags()
        self.status_history: list[dict[str, Any]] = []
        self.item_history: list[dict[str, Any]] = []
        self._transitioning = 0

        self.tracker = UnsavedChangesTracker()
        self.tracker.snapshot(order)

        self.autosave = AutosaveFieldSync(
            service.store,
            order.id,
            history=service.history,
            notifications=service.notifications,
            actor_id=options.actor_id,
            echo_flags=self.echo_flags,
            settings=service.settings,
        )
        for field in OrderField:
            self.autosave.watch(field, getattr(order, field.value))
        for item in order.active_items:
            self._watch_item(item)

        self.reconciler: Optional[RealtimeReconciler] = None
        if service.feed is not None and options.subscribe:
            self.reconciler = RealtimeReconciler(
                service.feed,
                str(order.id),
                self.echo_flags,
                {
                    Table.ORDER_ITEMS: self._reload_items,
                    Table.ORDER_ITEM_HISTORY: self._reload_item_history,
                    Table.ORDER_HISTORY: self._reload_status_history,
                },
                is_mounted=lambda: self.is_open,
            )

    @property
    def is_transitioning(self) -> bool:
        return self._transitioning > 0

    @property
    def is_saving(self) -> bool:
        return self.autosave.is_saving

    @property
    def is_reloading(self) -> bool:
        return self.reconciler is not None and self.reconciler.is_reloading

    async def start(self) -> None:
        bind_order_context(str(self.order.id))
        if self.reconciler is not None:
            await self.reconciler.start()
        logger.info(
            "Edit session opened",
            order_id=str(self.order.id),
            active_tab=self.options.active_tab,
            actor_id=self.options.actor_id,
        )

    # Transitions

    async def change_status(
        self,
        target: Union[OrderStatus, Phase, str],
        note: Optional[str] = None,
        comment: Optional[str] = None,
        responsible: Optional[str] = None,
    ) -> TransitionResult:
        """Run an explicit transition (or a drop, for a Phase target)."""
        self._transitioning += 1
        try:
            return await self.service.engine.transition(
                self.order, target, self._context(note, comment, responsible)
            )
        finally:
            self._transitioning -= 1

    async def move_to_phase(
        self,
        phase: Union[Phase, str],
        note: Optional[str] = None,
        comment: Optional[str] = None,
        responsible: Optional[str] = None,
    ) -> TransitionResult:
        self._transitioning += 1
        try:
            return await self.service.engine.drop_on_phase(
                self.order, phase, self._context(note, comment, responsible)
            )
        finally:
            self._transitioning -= 1

    async def change_item_status(self, item_id: uuid.UUID, new_status: Union[ItemStatus, str]) -> ItemStatusResult:
        self._transitioning += 1
        try:
            result = await self.service.engine.change_item_status(
                self.order, item_id, new_status, self._context()
            )
        finally:
            self._transitioning -= 1
        # Persisted immediately, so not an unsaved change.
        self.tracker.rebase_item(result.item, [ItemField.ITEM_STATUS])
        return result

    # Field edits

    def edit_field(self, field: Union[OrderField, str], value: Any) -> None:
        """Apply an order field edit locally and schedule its autosave."""
        field = OrderField(field)
        self._apply_edit(self.order, field, value, None)

    def edit_item_field(self, item_id: uuid.UUID, field: Union[ItemField, str], value: Any) -> None:
        """Apply an item field edit locally and schedule its autosave."""
        item = self._require_item(item_id)
        self._apply_edit(item, ItemField(field), value, item.id)

    async def add_item(self, **values: Any) -> OrderItem:
        item = await self.service.add_item(self.order, values, self.options.actor_id, self.echo_flags)
        self._watch_item(item)
        self.tracker.rebase_item(item)
        return item

    async def remove_item(self, item_id: uuid.UUID) -> OrderItem:
        item = await self.service.remove_item(self.order, item_id, self.options.actor_id, self.echo_flags)
        self.tracker.rebase_item(item)
        return item

    # Closing

    def request_close(self) -> CloseDecision:
        return self.tracker.request_close()

    async def close(self, force: bool = False) -> CloseDecision:
        """
        Close the session.

        Without ``force`` a dirty session stays open and
        ``CONFIRMATION_REQUIRED`` is returned.
        """
        decision = self.request_close()
        if decision is CloseDecision.CONFIRMATION_REQUIRED and not force:
            return decision

        self.is_open = False
        await self.autosave.close()
        if self.reconciler is not None:
            await self.reconciler.stop()
        logger.info("Edit session closed", order_id=str(self.order.id), forced=force)
        return CloseDecision.CLOSE

    # Reload hooks

    async def _reload_items(self, event: ChangeEvent) -> None:
        rows = await self.service.store.select(
            Table.ORDER_ITEMS,
            eq={"order_id": self.order.id},
            order_by="item_code",
        )
        if not self.is_open:
            return

        overwritten: list[str] = []
        local = {item.id: item for item in self.order.items}
        for row in rows:
            remote = OrderItem.from_row(row)
            current = local.get(remote.id)
            if current is None:
                self.order.items.append(remote)
                self._watch_item(remote)
                self.tracker.rebase_item(remote)
                continue
            changed = _remotely_changed_fields(event, remote.id)
            overwritten.extend(self._merge_remote_item(current, remote, changed))

        if overwritten:
            self.service.notifications.warning(
                "Item changed by another user",
                "Your unsaved edits to " + ", ".join(sorted(set(overwritten))) + " were replaced",
                order_id=str(self.order.id),
            )
        logger.debug("Items reloaded", order_id=str(self.order.id), items=len(rows), event_id=event.event_id)

    async def _reload_item_history(self, event: ChangeEvent) -> None:
        rows = await self.service.store.select(
            Table.ORDER_ITEM_HISTORY,
            eq={"order_id": self.order.id},
            order_by="changed_at",
            descending=True,
        )
        if not self.is_open:
            return
        self.item_history = rows

    async def _reload_status_history(self, event: ChangeEvent) -> None:
        order_row = await self.service.store.get(Table.ORDERS, self.order.id)
        rows = await self.service.store.select(
            Table.ORDER_HISTORY,
            eq={"order_id": self.order.id},
            order_by="changed_at",
            descending=True,
        )
        if not self.is_open:
            return

        self.status_history = rows
        if order_row is None:
            return
        status = OrderStatus.parse(order_row.get("status"))
        if status is not None and status != self.order.status:
            self.order.status = status
        for name in ("delivery_date", "production_released_at", "production_released_by"):
            if name in order_row:
                setattr(self.order, name, order_row[name])

    # Helpers

    def _context(
        self,
        note: Optional[str] = None,
        comment: Optional[str] = None,
        responsible: Optional[str] = None,
    ) -> TransitionContext:
        return TransitionContext(
            actor_id=self.options.actor_id,
            note=note,
            comment=comment,
            responsible=responsible,
            authorizer=self.options.authorizer,
            echo_flags=self.echo_flags,
        )

    def _require_item(self, item_id: uuid.UUID) -> OrderItem:
        item = self.order.find_item(item_id)
        if item is None or item.is_removed:
            raise OrderItemNotFoundError(
                f"Item {item_id} not found on order {self.order.order_number}",
                order_id=str(self.order.id),
                item_id=str(item_id),
            )
        return item

    def _apply_edit(
        self,
        target: Union[Order, OrderItem],
        field: Union[OrderField, ItemField],
        value: Any,
        item_id: Optional[uuid.UUID],
    ) -> None:
        previous = getattr(target, field.value)
        setattr(target, field.value, value)
        try:
            self.autosave.on_field_change(field, getattr(target, field.value), item_id=item_id)
        except ValidationError:
            setattr(target, field.value, previous)
            raise

    def _watch_item(self, item: OrderItem) -> None:
        for field in AUTOSAVED_ITEM_FIELDS:
            self.autosave.watch(field, getattr(item, field.value), item_id=item.id)

    def _merge_remote_item(
        self,
        current: OrderItem,
        remote: OrderItem,
        changed: Optional[set[str]],
    ) -> list[str]:
        """
        Merge a reloaded item into the live one.

        Fields the remote write changed replace the local value; if the user
        had an unsaved edit there it is lost and reported. Locally edited
        fields the remote write did not touch are kept so their pending save
        still lands. Status fields are always taken from the store.

        Args:
            current: Live item
            remote: Item as stored
            changed: Fields the triggering write changed, None for unknown

        Returns:
            Locally edited fields that were replaced
        """
        overwritten = []
        adopted = []
        for field in AUTOSAVED_ITEM_FIELDS:
            remote_value = getattr(remote, field.value)
            if getattr(current, field.value) == remote_value:
                adopted.append(field)
                continue
            modified = self.tracker.is_field_modified(current.id, field)
            remotely_changed = changed is None or field.value in changed
            if modified and not remotely_changed:
                continue
            if modified:
                overwritten.append(field.value)
            setattr(current, field.value, remote_value)
            self.autosave.accept_remote(field, remote_value, item_id=current.id)
            adopted.append(field)

        for name in ("item_status", "current_phase", "phase_started_at", "is_removed"):
            setattr(current, name, getattr(remote, name))
        self.tracker.rebase_item(current, [*adopted, ItemField.ITEM_STATUS])
        return overwritten


def _remotely_changed_fields(event: ChangeEvent, item_id: uuid.UUID) -> Optional[set[str]]:
    """Fields of ``item_id`` the event's write changed; None when unknown."""
    if event.table != Table.ORDER_ITEMS.value or event.row_id != str(item_id):
        return set()
    if not event.old:
        return None
    return {name for name, value in event.new.items() if event.old.get(name) != value}
