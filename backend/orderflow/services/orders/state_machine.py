"""Order transition engine with guards, side effects and cascades.

This module implements the TransitionEngine, the only component allowed to
change an order's status. Transitions come from three origins:

- explicit: the user picked a concrete status
- phase drop: the order was dropped on a phase column; the phase's default
  status is used
- cascaded: an item status change implied an order-level transition

Guards run before anything is written. The status write is the primary
write; history, comments and order stamps that follow it are dependent
writes whose failures are kept as ``PartialFailure`` on the result.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger
from orderflow.services.notifications import NotificationService
from orderflow.services.orders.authorization import AllowAllPhases, PhaseAuthorizer
from orderflow.services.orders.enums import (
    ItemField,
    ItemStatus,
    OrderStatus,
    Phase,
    Table,
    TransitionOrigin,
)
from orderflow.services.orders.errors import (
    AuthorizationError,
    CompletionJustificationRequired,
    ExceptionDetailsRequired,
    OrderItemNotFoundError,
    PartialFailure,
    PersistenceError,
    TransitionInProgressError,
    TransitionPersistenceError,
    UnknownStatusError,
    ValidationError,
)
from orderflow.services.orders.history import HistoryRecorder
from orderflow.services.orders.models import Order, OrderItem
from orderflow.services.orders.phases import (
    default_status_for_phase,
    item_phase_of,
    phase_of,
    phases_for_category,
    status_label,
    statuses_for_phase,
)
from orderflow.services.orders.realtime import EchoFlags
from orderflow.services.orders.store import RowStore

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransitionContext(BaseModel):
    """Caller-supplied inputs for a transition.

    Attributes:
        actor_id: User performing the change
        note: Justification; required to complete with pending items
        comment: Exception comment
        responsible: Party responsible for resolving an exception
        authorizer: Decides which phases the actor may edit
        echo_flags: Session echo flags to arm around feed-producing writes
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    actor_id: Optional[str] = None
    note: Optional[str] = None
    comment: Optional[str] = None
    responsible: Optional[str] = None
    authorizer: PhaseAuthorizer = Field(default_factory=AllowAllPhases)
    echo_flags: Optional[EchoFlags] = None


class TransitionResult(BaseModel):
    """Outcome of a transition that passed its guards."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    order: Order
    changed: bool
    origin: TransitionOrigin
    old_status: OrderStatus
    new_status: OrderStatus
    delivery_date: Optional[date] = None
    completion_note: Optional[dict[str, Any]] = None
    partial_failures: list[PartialFailure] = Field(default_factory=list)


class ItemStatusResult(BaseModel):
    """Outcome of an item status change and the cascades it triggered."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    order: Order
    item: OrderItem
    changed: bool
    old_status: ItemStatus
    new_status: ItemStatus
    cascaded: Optional[TransitionResult] = None
    production_released: bool = False
    partial_failures: list[PartialFailure] = Field(default_factory=list)


class SingleFlightGate:
    """Allows at most one transition in flight per order.

    A second request for a busy order is rejected, not queued.
    """

    def __init__(self) -> None:
        self._in_flight: set[str] = set()

    def is_busy(self, order_id: Union[UUID, str]) -> bool:
        return str(order_id) in self._in_flight

    @asynccontextmanager
    async def hold(self, order_id: Union[UUID, str]) -> AsyncIterator[None]:
        key = str(order_id)
        if key in self._in_flight:
            logger.warning("Transition rejected, another is in flight", order_id=key)
            raise TransitionInProgressError(
                "Another transition for this order is still in progress",
                order_id=key,
            )
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)


Guard = Callable[[Order, TransitionContext], None]
SideEffect = Callable[[Order, TransitionContext], Awaitable[Optional[PartialFailure]]]
ItemCascade = Callable[[Order, OrderItem, TransitionContext, ItemStatusResult], Awaitable[None]]


class TransitionEngine:
    """Validates and applies order status transitions.

    Guards, side effects and item cascades are looked up by target status,
    following the same table-driven layout for each.
    """

    def __init__(
        self,
        store: RowStore,
        history: Optional[HistoryRecorder] = None,
        notifications: Optional[NotificationService] = None,
        gate: Optional[SingleFlightGate] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        """Initialize the engine.

        Args:
            store: Row store for orders, items and dependent tables
            history: History recorder; built on ``store`` when omitted
            notifications: User notification service
            gate: Single-flight gate, shared by every session of a process
            settings: Application settings
            clock: Source of the current time
        """
        self.store = store
        self.history = history or HistoryRecorder(store)
        self.notifications = notifications or NotificationService()
        self.gate = gate or SingleFlightGate()
        self.settings = settings or get_settings()
        self.clock = clock
        self._guards: dict[OrderStatus, Guard] = self._initialize_guards()
        self._side_effects: dict[OrderStatus, SideEffect] = self._initialize_side_effects()
        self._item_cascades: dict[ItemStatus, ItemCascade] = self._initialize_item_cascades()

        logger.debug(
            "TransitionEngine initialized",
            guards_count=len(self._guards),
            side_effects_count=len(self._side_effects),
            cascades_count=len(self._item_cascades),
        )

    def _initialize_guards(self) -> dict[OrderStatus, Guard]:
        return {
            OrderStatus.COMPLETED: self._guard_completion,
            OrderStatus.EXCEPTION: self._guard_exception,
        }

    def _initialize_side_effects(self) -> dict[OrderStatus, SideEffect]:
        return {
            OrderStatus.EXCEPTION: self._effect_exception_comment,
        }

    def _initialize_item_cascades(self) -> dict[ItemStatus, ItemCascade]:
        return {
            ItemStatus.PURCHASE_REQUIRED: self._cascade_purchase_required,
            ItemStatus.AWAITING_PRODUCTION: self._cascade_production_release,
        }

    # Public operations

    async def transition(
        self,
        order: Order,
        target: Union[OrderStatus, Phase, str],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """Move an order to a status, or to a phase's default status.

        Args:
            order: Order to transition; updated in place on success
            target: Concrete status, or a phase for drop semantics
            context: Actor, justification and authorization inputs

        Returns:
            TransitionResult; ``changed`` is False for no-op transitions

        Raises:
            UnknownStatusError: If ``target`` is not a declared status
            ValidationError: If a guard blocks the transition
            AuthorizationError: If the actor may not edit the target phase
            TransitionInProgressError: If another transition is in flight
            TransitionPersistenceError: If the status write fails
        """
        if isinstance(target, Phase):
            return await self.drop_on_phase(order, target, context)

        target_status = self._resolve_status(target)
        context = context or TransitionContext()
        async with self.gate.hold(order.id):
            return await self._transition(order, target_status, context, TransitionOrigin.EXPLICIT)

    async def drop_on_phase(
        self,
        order: Order,
        phase: Union[Phase, str],
        context: Optional[TransitionContext] = None,
    ) -> TransitionResult:
        """Move an order onto a phase column using the phase's default status.

        Dropping onto the order's current phase is a no-op.
        """
        context = context or TransitionContext()
        if not isinstance(phase, Phase):
            try:
                phase = Phase.from_string(phase)
            except ValueError as e:
                raise ValidationError(str(e), phase=phase) from e
        async with self.gate.hold(order.id):
            if phase == order.phase:
                logger.debug("Drop on current phase ignored", order_id=str(order.id), phase=phase.value)
                return self._unchanged(order, TransitionOrigin.PHASE_DROP)

            if phase not in phases_for_category(order.order_category):
                raise ValidationError(
                    f"Phase {phase.value} does not apply to {order.order_category.value} orders",
                    order_id=str(order.id),
                    phase=phase.value,
                )

            return await self._transition(
                order,
                default_status_for_phase(phase),
                context,
                TransitionOrigin.PHASE_DROP,
            )

    async def change_item_status(
        self,
        order: Order,
        item_id: UUID,
        new_status: Union[ItemStatus, str],
        context: Optional[TransitionContext] = None,
    ) -> ItemStatusResult:
        """Change an item's status and run the cascades it implies.

        Re-entering the item's current status is a no-op; cascades fire only
        on entry.

        Raises:
            OrderItemNotFoundError: If the item is not on the order
            TransitionInProgressError: If another transition is in flight
            TransitionPersistenceError: If the item write fails
        """
        context = context or TransitionContext()
        if not isinstance(new_status, ItemStatus):
            try:
                new_status = ItemStatus.from_string(new_status)
            except ValueError as e:
                raise ValidationError(str(e), item_status=new_status) from e

        item = order.find_item(item_id)
        if item is None:
            raise OrderItemNotFoundError(
                f"Item {item_id} not found on order {order.order_number}",
                order_id=str(order.id),
                item_id=str(item_id),
            )

        async with self.gate.hold(order.id):
            old_status = item.item_status
            result = ItemStatusResult(
                order=order,
                item=item,
                changed=False,
                old_status=old_status,
                new_status=new_status,
            )
            if old_status == new_status:
                logger.debug(
                    "Item already in status, nothing to do",
                    order_id=str(order.id),
                    item_id=str(item.id),
                    item_status=new_status.value,
                )
                return result

            await self._write_item_status(order, item, new_status, context, result)

            cascade = self._item_cascades.get(new_status)
            if cascade is not None:
                await cascade(order, item, context, result)

            for failure in result.partial_failures:
                self._report_partial_failure(order, failure)
            return result

    def allowed_statuses(
        self,
        order: Order,
        authorizer: Optional[PhaseAuthorizer] = None,
    ) -> dict[Phase, list[OrderStatus]]:
        """Statuses the actor may pick for an order, grouped by phase."""
        authorizer = authorizer or AllowAllPhases()
        return {
            phase: list(statuses_for_phase(phase))
            for phase in phases_for_category(order.order_category)
            if authorizer.can_edit_phase(phase)
        }

    @staticmethod
    def pending_items(order: Order) -> list[OrderItem]:
        """Active items whose delivered quantity is below the requested one."""
        return [item for item in order.active_items if not item.is_fully_delivered]

    # Core transition

    def _resolve_status(self, target: Union[OrderStatus, str]) -> OrderStatus:
        if isinstance(target, OrderStatus):
            return target
        status = OrderStatus.parse(target)
        if status is None:
            raise UnknownStatusError(f"Unknown order status: {target!r}", status=target)
        return status

    def _unchanged(self, order: Order, origin: TransitionOrigin) -> TransitionResult:
        return TransitionResult(
            order=order,
            changed=False,
            origin=origin,
            old_status=order.status,
            new_status=order.status,
        )

    async def _transition(
        self,
        order: Order,
        target: OrderStatus,
        context: TransitionContext,
        origin: TransitionOrigin,
    ) -> TransitionResult:
        old_status = order.status
        if target == old_status:
            return self._unchanged(order, origin)

        target_phase = phase_of(target, order.order_category)
        log_context = {
            "order_id": str(order.id),
            "transition": f"{old_status.value}->{target.value}",
            "origin": origin.value,
            "actor_id": context.actor_id,
        }

        if origin is not TransitionOrigin.CASCADED:
            self._authorize(order, target_phase, context)

        guard = self._guards.get(target)
        if guard is not None:
            guard(order, context)

        values: dict[str, Any] = {"status": target.value}
        new_deadline: Optional[date] = None
        if target_phase.value in self.settings.time_sensitive_phases and target_phase != order.phase:
            new_deadline = await self._derive_deadline(order)
            values["delivery_date"] = new_deadline

        try:
            await self.store.update(Table.ORDERS, order.id, values)
        except PersistenceError as e:
            logger.error("Status write failed", error=str(e), **log_context)
            self.notifications.error(
                "Could not update order status",
                str(e),
                order_id=str(order.id),
            )
            raise TransitionPersistenceError(
                f"Failed to persist status {target.value}",
                **log_context,
            ) from e

        order.status = target
        if new_deadline is not None:
            order.delivery_date = new_deadline

        result = TransitionResult(
            order=order,
            changed=True,
            origin=origin,
            old_status=old_status,
            new_status=target,
            delivery_date=new_deadline,
        )
        if target is OrderStatus.COMPLETED:
            await self._insert_completion_note(order, context, result)

        effect = self._side_effects.get(target)
        if effect is not None:
            failure = await effect(order, context)
            if failure is not None:
                result.partial_failures.append(failure)

        self._arm(context, Table.ORDER_HISTORY)
        failure = await self.history.record_status_change(
            order.id,
            old_status,
            target,
            context.actor_id,
            notes=context.note,
        )
        if failure is not None:
            self._disarm(context, Table.ORDER_HISTORY)
            result.partial_failures.append(failure)

        logger.info(
            "Status transition applied",
            phase=target_phase.value,
            delivery_date=new_deadline.isoformat() if new_deadline else None,
            partial_failures=len(result.partial_failures),
            **log_context,
        )
        if origin is not TransitionOrigin.CASCADED:
            self.notifications.success(
                "Status updated",
                f"Order {order.order_number} moved to {status_label(target)}",
                order_id=str(order.id),
            )
            for failure in result.partial_failures:
                self._report_partial_failure(order, failure)
        return result

    def _authorize(self, order: Order, phase: Phase, context: TransitionContext) -> None:
        if context.authorizer.can_edit_phase(phase):
            return
        logger.warning(
            "Transition not authorized",
            order_id=str(order.id),
            phase=phase.value,
            actor_id=context.actor_id,
        )
        self.notifications.error(
            "Permission denied",
            f"You cannot move orders into {phase.value}",
            order_id=str(order.id),
        )
        raise AuthorizationError(
            f"Actor may not edit phase {phase.value}",
            order_id=str(order.id),
            phase=phase.value,
            actor_id=context.actor_id,
        )

    async def _derive_deadline(self, order: Order) -> date:
        sla_days = self.settings.default_sla_days
        try:
            rows = await self.store.select(
                Table.ORDER_TYPE_CONFIG,
                eq={"order_type": order.order_type},
                limit=1,
            )
        except PersistenceError as e:
            logger.warning(
                "Order type config lookup failed, using default SLA",
                order_id=str(order.id),
                order_type=order.order_type,
                error=str(e),
            )
            rows = []

        if rows and rows[0].get("default_sla_days") is not None:
            sla_days = int(rows[0]["default_sla_days"])
        return self.clock().date() + timedelta(days=sla_days)

    async def _insert_completion_note(
        self,
        order: Order,
        context: TransitionContext,
        result: TransitionResult,
    ) -> None:
        # Runs after the status write; a rejected status leaves no note.
        pending = self.pending_items(order)
        if not pending:
            return

        try:
            result.completion_note = await self.store.insert(
                Table.ORDER_COMPLETION_NOTES,
                {
                    "order_id": order.id,
                    "note": context.note.strip(),
                    "pending_items": [item.pending_snapshot() for item in pending],
                    "user_id": context.actor_id,
                    "created_at": self.clock(),
                },
            )
        except PersistenceError as e:
            logger.error("Completion note write failed", order_id=str(order.id), error=str(e))
            result.partial_failures.append(
                PartialFailure(
                    "Order completed but the completion note was not saved",
                    step="completion_note",
                    cause=e,
                    order_id=str(order.id),
                )
            )

    # Guards

    def _guard_completion(self, order: Order, context: TransitionContext) -> None:
        pending = self.pending_items(order)
        has_note = bool(context.note and context.note.strip())

        logger.debug(
            "Completion guard check",
            order_id=str(order.id),
            pending_items=len(pending),
            has_note=has_note,
        )

        if pending and not has_note:
            raise CompletionJustificationRequired(
                f"Order {order.order_number} has {len(pending)} pending item(s)",
                pending_items=[item.pending_snapshot() for item in pending],
                order_id=str(order.id),
            )

    def _guard_exception(self, order: Order, context: TransitionContext) -> None:
        missing = [
            name
            for name, value in (("comment", context.comment), ("responsible", context.responsible))
            if not (value and value.strip())
        ]
        if missing:
            raise ExceptionDetailsRequired(
                "An exception needs a comment and a responsible party",
                missing=missing,
                order_id=str(order.id),
            )

    # Side effects

    async def _effect_exception_comment(
        self,
        order: Order,
        context: TransitionContext,
    ) -> Optional[PartialFailure]:
        comment = context.comment.strip()
        responsible = context.responsible.strip()
        try:
            await self.store.insert(
                Table.ORDER_COMMENTS,
                {
                    "order_id": order.id,
                    "comment": f"[Exception] {comment}\nResponsible: {responsible}",
                    "responsible": responsible,
                    "user_id": context.actor_id,
                    "created_at": self.clock(),
                },
            )
        except PersistenceError as e:
            logger.error("Exception comment write failed", order_id=str(order.id), error=str(e))
            return PartialFailure(
                "Status changed to exception but the comment was not saved",
                step="exception_comment",
                cause=e,
                order_id=str(order.id),
            )
        return None

    # Item status and cascades

    async def _write_item_status(
        self,
        order: Order,
        item: OrderItem,
        new_status: ItemStatus,
        context: TransitionContext,
        result: ItemStatusResult,
    ) -> None:
        values: dict[str, Any] = {"item_status": new_status.value}
        new_phase = item_phase_of(new_status, order.order_category)
        stamp: Optional[datetime] = None
        if new_phase is not None and new_phase != item.current_phase:
            stamp = self.clock()
            values["current_phase"] = new_phase.value
            values["phase_started_at"] = stamp

        self._arm(context, Table.ORDER_ITEMS)
        try:
            await self.store.update(Table.ORDER_ITEMS, item.id, values)
        except PersistenceError as e:
            self._disarm(context, Table.ORDER_ITEMS)
            logger.error(
                "Item status write failed",
                order_id=str(order.id),
                item_id=str(item.id),
                item_status=new_status.value,
                error=str(e),
            )
            self.notifications.error("Could not update item status", str(e), order_id=str(order.id))
            raise TransitionPersistenceError(
                f"Failed to persist item status {new_status.value}",
                order_id=str(order.id),
                item_id=str(item.id),
            ) from e

        item.item_status = new_status
        if stamp is not None:
            item.current_phase = new_phase
            item.phase_started_at = stamp
        result.changed = True

        self._arm(context, Table.ORDER_ITEM_HISTORY)
        failure = await self.history.record_item_change(
            order.id,
            item.id,
            ItemField.ITEM_STATUS,
            result.old_status,
            new_status,
            context.actor_id,
        )
        if failure is not None:
            self._disarm(context, Table.ORDER_ITEM_HISTORY)
            result.partial_failures.append(failure)

        logger.info(
            "Item status changed",
            order_id=str(order.id),
            item_id=str(item.id),
            transition=f"{result.old_status.value}->{new_status.value}",
            phase=new_phase.value if new_phase else None,
            phase_stamped=stamp is not None,
        )

    async def _cascade_purchase_required(
        self,
        order: Order,
        item: OrderItem,
        context: TransitionContext,
        result: ItemStatusResult,
    ) -> None:
        if order.phase == Phase.PURCHASES:
            return

        logger.info(
            "Item requires purchase, moving order to purchases",
            order_id=str(order.id),
            item_id=str(item.id),
        )
        try:
            result.cascaded = await self._transition(
                order,
                OrderStatus.PURCHASE_PENDING,
                context,
                TransitionOrigin.CASCADED,
            )
        except PersistenceError as e:
            result.partial_failures.append(
                PartialFailure(
                    "Item saved but the order was not moved to purchases",
                    step="purchase_cascade",
                    cause=e,
                    order_id=str(order.id),
                )
            )
            return
        result.partial_failures.extend(result.cascaded.partial_failures)

    async def _cascade_production_release(
        self,
        order: Order,
        item: OrderItem,
        context: TransitionContext,
        result: ItemStatusResult,
    ) -> None:
        if order.production_released_at is not None:
            return

        released_at = self.clock()
        try:
            await self.store.update(
                Table.ORDERS,
                order.id,
                {
                    "production_released_at": released_at,
                    "production_released_by": context.actor_id,
                },
            )
        except PersistenceError as e:
            result.partial_failures.append(
                PartialFailure(
                    "Item saved but the production release was not recorded",
                    step="production_release",
                    cause=e,
                    order_id=str(order.id),
                )
            )
            return

        order.production_released_at = released_at
        order.production_released_by = context.actor_id
        result.production_released = True
        logger.info(
            "Order released to production",
            order_id=str(order.id),
            item_id=str(item.id),
            released_by=context.actor_id,
        )

    # Helpers

    @staticmethod
    def _arm(context: TransitionContext, stream: Table) -> None:
        if context.echo_flags is not None:
            context.echo_flags.arm(stream)

    @staticmethod
    def _disarm(context: TransitionContext, stream: Table) -> None:
        if context.echo_flags is not None:
            context.echo_flags.disarm(stream)

    def _report_partial_failure(self, order: Order, failure: PartialFailure) -> None:
        self.notifications.warning(
            "Change saved with warnings",
            failure.message,
            order_id=str(order.id),
            step=failure.step,
        )
