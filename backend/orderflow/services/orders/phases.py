"""Status to phase mapping.

Single source of truth for which pipeline phase a status belongs to. Column
grouping, filters, badges and the transition engine all call into this
module; nothing else may re-implement the mapping.
"""

import warnings
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

from orderflow.core.logging import get_logger
from orderflow.services.orders.enums import ItemStatus, OrderCategory, OrderStatus, Phase

logger = get_logger(__name__)


class UnmappedStatusWarning(UserWarning):
    """Emitted when a status has no declared phase."""


DEFAULT_PHASE = Phase.COMPLETION

_PRODUCTION_STATUSES: tuple[OrderStatus, ...] = (
    OrderStatus.SEPARATION_STARTED,
    OrderStatus.IN_PRODUCTION,
    OrderStatus.AWAITING_MATERIAL,
    OrderStatus.SEPARATION_COMPLETED,
    OrderStatus.PRODUCTION_COMPLETED,
)

# Declared phases in pipeline order, with their statuses in display order.
PHASE_STATUSES: Mapping[Phase, tuple[OrderStatus, ...]] = MappingProxyType({
    Phase.ALMOX_SSM: (
        OrderStatus.ALMOX_SSM_PENDING,
        OrderStatus.ALMOX_SSM_RECEIVED,
        OrderStatus.ALMOX_SSM_IN_REVIEW,
        OrderStatus.ALMOX_SSM_APPROVED,
    ),
    Phase.ORDER_GENERATION: (
        OrderStatus.ORDER_GENERATION_PENDING,
        OrderStatus.ORDER_IN_CREATION,
        OrderStatus.ORDER_GENERATED,
    ),
    Phase.PURCHASES: (
        OrderStatus.PURCHASE_PENDING,
        OrderStatus.PURCHASE_REQUESTED,
        OrderStatus.PURCHASE_QUOTED,
        OrderStatus.PURCHASE_ORDERED,
        OrderStatus.PURCHASE_IN_PROGRESS,
        OrderStatus.PURCHASE_RECEIVED,
        OrderStatus.PURCHASE_COMPLETED,
    ),
    Phase.ALMOX_GENERAL: (
        OrderStatus.ALMOX_GENERAL_RECEIVED,
        OrderStatus.ALMOX_GENERAL_SEPARATING,
        OrderStatus.ALMOX_GENERAL_READY,
    ),
    Phase.PRODUCTION_CLIENT: _PRODUCTION_STATUSES,
    Phase.PRODUCTION_STOCK: _PRODUCTION_STATUSES,
    Phase.BALANCE_GENERATION: (
        OrderStatus.BALANCE_CALCULATION,
        OrderStatus.BALANCE_REVIEW,
        OrderStatus.BALANCE_APPROVED,
    ),
    Phase.LABORATORY: (
        OrderStatus.AWAITING_LAB,
        OrderStatus.IN_LAB_ANALYSIS,
        OrderStatus.LAB_COMPLETED,
    ),
    Phase.PACKAGING: (
        OrderStatus.IN_QUALITY_CHECK,
        OrderStatus.IN_PACKAGING,
        OrderStatus.READY_FOR_SHIPPING,
    ),
    Phase.FREIGHT_QUOTE: (
        OrderStatus.FREIGHT_QUOTE_REQUESTED,
        OrderStatus.FREIGHT_QUOTE_RECEIVED,
        OrderStatus.FREIGHT_APPROVED,
    ),
    Phase.READY_TO_INVOICE: (
        OrderStatus.READY_TO_INVOICE,
        OrderStatus.PENDING_INVOICE_REQUEST,
    ),
    Phase.INVOICING: (
        OrderStatus.INVOICE_REQUESTED,
        OrderStatus.AWAITING_INVOICE,
        OrderStatus.INVOICE_ISSUED,
        OrderStatus.INVOICE_SENT,
    ),
    Phase.LOGISTICS: (
        OrderStatus.RELEASED_FOR_SHIPPING,
        OrderStatus.IN_EXPEDITION,
        OrderStatus.PICKUP_SCHEDULED,
        OrderStatus.AWAITING_PICKUP,
    ),
    Phase.IN_TRANSIT: (
        OrderStatus.IN_TRANSIT,
        OrderStatus.COLLECTED,
    ),
    Phase.COMPLETION: (
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
    ),
    Phase.EXCEPTIONS: (
        OrderStatus.EXCEPTION,
        OrderStatus.CANCELLED,
        OrderStatus.ON_HOLD,
        OrderStatus.DELAYED,
        OrderStatus.RETURNED,
    ),
})

DEFAULT_STATUS_FOR_PHASE: Mapping[Phase, OrderStatus] = MappingProxyType({
    Phase.ALMOX_SSM: OrderStatus.ALMOX_SSM_PENDING,
    Phase.ORDER_GENERATION: OrderStatus.ORDER_GENERATION_PENDING,
    Phase.PURCHASES: OrderStatus.PURCHASE_PENDING,
    Phase.ALMOX_GENERAL: OrderStatus.ALMOX_GENERAL_RECEIVED,
    Phase.PRODUCTION_CLIENT: OrderStatus.IN_PRODUCTION,
    Phase.PRODUCTION_STOCK: OrderStatus.IN_PRODUCTION,
    Phase.BALANCE_GENERATION: OrderStatus.BALANCE_CALCULATION,
    Phase.LABORATORY: OrderStatus.IN_LAB_ANALYSIS,
    Phase.PACKAGING: OrderStatus.IN_PACKAGING,
    Phase.FREIGHT_QUOTE: OrderStatus.FREIGHT_QUOTE_REQUESTED,
    Phase.READY_TO_INVOICE: OrderStatus.READY_TO_INVOICE,
    Phase.INVOICING: OrderStatus.INVOICE_REQUESTED,
    Phase.LOGISTICS: OrderStatus.IN_EXPEDITION,
    Phase.IN_TRANSIT: OrderStatus.IN_TRANSIT,
    Phase.COMPLETION: OrderStatus.COMPLETED,
    Phase.EXCEPTIONS: OrderStatus.EXCEPTION,
})

# Reverse lookup built once from PHASE_STATUSES. Production statuses resolve
# to the client column here and are redirected by category in phase_of().
_STATUS_TO_PHASE: Mapping[str, Phase] = MappingProxyType({
    status.value: phase
    for phase, statuses in PHASE_STATUSES.items()
    if phase is not Phase.PRODUCTION_STOCK
    for status in statuses
})

ITEM_STATUS_PHASE: Mapping[ItemStatus, Optional[Phase]] = MappingProxyType({
    ItemStatus.PENDING: None,
    ItemStatus.IN_STOCK: Phase.ALMOX_GENERAL,
    ItemStatus.AWAITING_PRODUCTION: Phase.PRODUCTION_CLIENT,
    ItemStatus.PURCHASE_REQUIRED: Phase.PURCHASES,
    ItemStatus.PURCHASE_REQUESTED: Phase.PURCHASES,
    ItemStatus.COMPLETED: Phase.COMPLETION,
})

STATUS_LABELS: Mapping[str, str] = MappingProxyType({
    "almox_ssm_pending": "Almox SSM - Waiting",
    "almox_ssm_received": "Received at Almox (SSM)",
    "almox_ssm_in_review": "Almox SSM - In Review",
    "almox_ssm_approved": "Almox SSM - Approved",
    "order_generation_pending": "Order Pending",
    "order_in_creation": "Creating Order",
    "order_generated": "Order Generated",
    "purchase_pending": "Purchase Pending",
    "purchase_requested": "Purchase Requested",
    "purchase_quoted": "Quote Received",
    "purchase_ordered": "Purchase Order Issued",
    "purchase_in_progress": "Purchase In Progress",
    "purchase_received": "Material Received",
    "purchase_completed": "Purchase Completed",
    "almox_general_received": "Received at Almox (General)",
    "almox_general_separating": "Separating",
    "almox_general_ready": "Almox General Ready",
    "separation_started": "Separation Started",
    "in_production": "In Production",
    "awaiting_material": "Awaiting Material",
    "separation_completed": "Separation Completed",
    "production_completed": "Production Completed",
    "balance_calculation": "Calculating Balance",
    "balance_review": "Reviewing Balance",
    "balance_approved": "Balance Approved",
    "awaiting_lab": "Awaiting Lab",
    "in_lab_analysis": "In Lab Analysis",
    "lab_completed": "Lab Completed",
    "in_quality_check": "In Quality Check",
    "in_packaging": "In Packaging",
    "ready_for_shipping": "Ready for Shipping",
    "freight_quote_requested": "Freight Quote Requested",
    "freight_quote_received": "Freight Quote Received",
    "freight_approved": "Freight Approved",
    "ready_to_invoice": "Ready to Invoice",
    "pending_invoice_request": "Awaiting Invoice Request",
    "invoice_requested": "Invoice Requested",
    "awaiting_invoice": "Processing Invoice",
    "invoice_issued": "Invoice Issued",
    "invoice_sent": "Invoice Sent to Customer",
    "released_for_shipping": "Released for Shipping",
    "in_expedition": "Left at Expedition",
    "pickup_scheduled": "Pickup Scheduled",
    "awaiting_pickup": "Awaiting Pickup",
    "in_transit": "In Transit",
    "collected": "Collected",
    "delivered": "Delivered",
    "completed": "Completed",
    "exception": "Exception",
    "cancelled": "Cancelled",
    "on_hold": "On Hold",
    "delayed": "Delayed",
    "returned": "Returned",
    # Item statuses
    "pending": "Pending",
    "in_stock": "In Stock",
    "awaiting_production": "Awaiting Production",
    "purchase_required": "Purchase Required",
})

StatusLike = Union[OrderStatus, str]


def phase_of(
    status: Optional[StatusLike],
    order_category: Optional[Union[OrderCategory, str]] = None,
) -> Phase:
    """Map an order status onto its pipeline phase.

    Total over every input: statuses without a declared phase fall back to
    ``DEFAULT_PHASE`` and emit an ``UnmappedStatusWarning`` instead of raising,
    so display code never breaks on an unrecognized value.

    Args:
        status: Order status (enum or raw string)
        order_category: Order category; stock orders use the stock
            production column

    Returns:
        The phase the status belongs to
    """
    key = status.value if isinstance(status, OrderStatus) else status
    phase = _STATUS_TO_PHASE.get(key) if key else None

    if phase is None:
        logger.warning(
            "Status has no declared phase, using default",
            status=key,
            default_phase=DEFAULT_PHASE.value,
        )
        warnings.warn(
            f"Status {key!r} has no declared phase; "
            f"falling back to {DEFAULT_PHASE.value!r}",
            UnmappedStatusWarning,
            stacklevel=2,
        )
        return DEFAULT_PHASE

    if phase is Phase.PRODUCTION_CLIENT and _is_stock(order_category):
        return Phase.PRODUCTION_STOCK
    return phase


def _is_stock(order_category: Optional[Union[OrderCategory, str]]) -> bool:
    if order_category is None:
        return False
    value = order_category.value if isinstance(order_category, OrderCategory) else order_category
    return value == OrderCategory.STOCK.value


def statuses_for_phase(phase: Phase) -> tuple[OrderStatus, ...]:
    """Return the statuses declared for a phase, in display order."""
    return PHASE_STATUSES[phase]


def default_status_for_phase(phase: Phase) -> OrderStatus:
    """Return the status an order takes when dropped onto a phase."""
    return DEFAULT_STATUS_FOR_PHASE[phase]


def is_same_phase(
    first: StatusLike,
    second: StatusLike,
    order_category: Optional[Union[OrderCategory, str]] = None,
) -> bool:
    """Check whether two statuses belong to the same phase."""
    return phase_of(first, order_category) == phase_of(second, order_category)


def phases_for_category(
    order_category: Optional[Union[OrderCategory, str]] = None,
) -> list[Phase]:
    """Return the phases visible for an order category, in pipeline order.

    Only one production column applies to a given category.
    """
    hidden = Phase.PRODUCTION_CLIENT if _is_stock(order_category) else Phase.PRODUCTION_STOCK
    return [phase for phase in PHASE_STATUSES if phase is not hidden]


def item_phase_of(
    item_status: ItemStatus,
    order_category: Optional[Union[OrderCategory, str]] = None,
) -> Optional[Phase]:
    """Return the phase an item enters with the given item status, if any."""
    phase = ITEM_STATUS_PHASE[item_status]
    if phase is Phase.PRODUCTION_CLIENT and _is_stock(order_category):
        return Phase.PRODUCTION_STOCK
    return phase


def group_by_phase(orders: Iterable) -> dict[Phase, list]:
    """Group orders into phase columns.

    Every declared phase is present in the result, empty or not.

    Args:
        orders: Order models or raw order rows carrying ``status`` and
            ``order_category``

    Returns:
        Mapping of phase to the orders currently in it
    """
    columns: dict[Phase, list] = {phase: [] for phase in PHASE_STATUSES}
    for order in orders:
        columns[phase_of(_read(order, "status"), _read(order, "order_category"))].append(order)
    return columns


def _read(order: Any, name: str) -> Any:
    if isinstance(order, Mapping):
        return order.get(name)
    return getattr(order, name, None)


def status_label(status: Optional[StatusLike]) -> str:
    """Return the display label for a status, or the raw value if unknown."""
    if not status:
        return "(empty)"
    key = status.value if isinstance(status, Enum) else status
    return STATUS_LABELS.get(key, key)
