"""Order lifecycle enums: statuses, phases, item states and tracked fields.

This module defines the closed vocabularies used across the order lifecycle
engine. Statuses and field names are parsed into these enums at the edges so
that invalid values are rejected once, instead of being compared as raw
strings throughout the code.
"""

from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    """Fine-grained order lifecycle status.

    Each status belongs to exactly one pipeline phase; see
    ``orderflow.services.orders.phases`` for the mapping.
    """

    # Almox SSM
    ALMOX_SSM_PENDING = "almox_ssm_pending"
    ALMOX_SSM_RECEIVED = "almox_ssm_received"
    ALMOX_SSM_IN_REVIEW = "almox_ssm_in_review"
    ALMOX_SSM_APPROVED = "almox_ssm_approved"

    # Order generation
    ORDER_GENERATION_PENDING = "order_generation_pending"
    ORDER_IN_CREATION = "order_in_creation"
    ORDER_GENERATED = "order_generated"

    # Purchases
    PURCHASE_PENDING = "purchase_pending"
    PURCHASE_REQUESTED = "purchase_requested"
    PURCHASE_QUOTED = "purchase_quoted"
    PURCHASE_ORDERED = "purchase_ordered"
    PURCHASE_IN_PROGRESS = "purchase_in_progress"
    PURCHASE_RECEIVED = "purchase_received"
    PURCHASE_COMPLETED = "purchase_completed"

    # Almox general
    ALMOX_GENERAL_RECEIVED = "almox_general_received"
    ALMOX_GENERAL_SEPARATING = "almox_general_separating"
    ALMOX_GENERAL_READY = "almox_general_ready"

    # Production (client or stock, depending on order category)
    SEPARATION_STARTED = "separation_started"
    IN_PRODUCTION = "in_production"
    AWAITING_MATERIAL = "awaiting_material"
    SEPARATION_COMPLETED = "separation_completed"
    PRODUCTION_COMPLETED = "production_completed"

    # Balance generation
    BALANCE_CALCULATION = "balance_calculation"
    BALANCE_REVIEW = "balance_review"
    BALANCE_APPROVED = "balance_approved"

    # Laboratory
    AWAITING_LAB = "awaiting_lab"
    IN_LAB_ANALYSIS = "in_lab_analysis"
    LAB_COMPLETED = "lab_completed"

    # Packaging
    IN_QUALITY_CHECK = "in_quality_check"
    IN_PACKAGING = "in_packaging"
    READY_FOR_SHIPPING = "ready_for_shipping"

    # Freight quote
    FREIGHT_QUOTE_REQUESTED = "freight_quote_requested"
    FREIGHT_QUOTE_RECEIVED = "freight_quote_received"
    FREIGHT_APPROVED = "freight_approved"

    # Ready to invoice
    READY_TO_INVOICE = "ready_to_invoice"
    PENDING_INVOICE_REQUEST = "pending_invoice_request"

    # Invoicing
    INVOICE_REQUESTED = "invoice_requested"
    AWAITING_INVOICE = "awaiting_invoice"
    INVOICE_ISSUED = "invoice_issued"
    INVOICE_SENT = "invoice_sent"

    # Logistics
    RELEASED_FOR_SHIPPING = "released_for_shipping"
    IN_EXPEDITION = "in_expedition"
    PICKUP_SCHEDULED = "pickup_scheduled"
    AWAITING_PICKUP = "awaiting_pickup"

    # In transit
    IN_TRANSIT = "in_transit"
    COLLECTED = "collected"

    # Completion
    DELIVERED = "delivered"
    COMPLETED = "completed"

    # Exceptions
    EXCEPTION = "exception"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"
    DELAYED = "delayed"
    RETURNED = "returned"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Args:
            value: String representation of status

        Returns:
            OrderStatus enum value

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["OrderStatus"]:
        """Return the matching status, or None for unknown/empty values."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class Phase(str, Enum):
    """Coarse-grained pipeline stage derived from an order status."""

    ALMOX_SSM = "almox_ssm"
    ORDER_GENERATION = "order_generation"
    PURCHASES = "purchases"
    ALMOX_GENERAL = "almox_general"
    PRODUCTION_CLIENT = "production_client"
    PRODUCTION_STOCK = "production_stock"
    BALANCE_GENERATION = "balance_generation"
    LABORATORY = "laboratory"
    PACKAGING = "packaging"
    FREIGHT_QUOTE = "freight_quote"
    READY_TO_INVOICE = "ready_to_invoice"
    INVOICING = "invoicing"
    LOGISTICS = "logistics"
    IN_TRANSIT = "in_transit"
    COMPLETION = "completion"
    EXCEPTIONS = "exceptions"

    @classmethod
    def from_string(cls, value: str) -> "Phase":
        """Convert string to Phase enum.

        Raises:
            ValueError: If value is not a declared phase
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join([p.value for p in cls])
            raise ValueError(
                f"Invalid phase: {value}. Valid values are: {valid_values}"
            )


class OrderCategory(str, Enum):
    """Order category; decides which production column an order uses."""

    SALES = "sales"
    STOCK = "stock"


class Priority(str, Enum):
    """Order priority."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ItemStatus(str, Enum):
    """Order item sub-lifecycle, independent of the order status.

    Valid progression:
    - PENDING -> IN_STOCK, AWAITING_PRODUCTION, PURCHASE_REQUIRED
    - PURCHASE_REQUIRED -> PURCHASE_REQUESTED
    - any -> COMPLETED
    """

    PENDING = "pending"
    IN_STOCK = "in_stock"
    AWAITING_PRODUCTION = "awaiting_production"
    PURCHASE_REQUIRED = "purchase_required"
    PURCHASE_REQUESTED = "purchase_requested"
    COMPLETED = "completed"

    @classmethod
    def from_string(cls, value: str) -> "ItemStatus":
        """Convert string to ItemStatus enum.

        Raises:
            ValueError: If value is not a valid item status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid item status: {value}. "
                f"Valid values are: {valid_values}"
            )


class TransitionOrigin(str, Enum):
    """What initiated a status transition."""

    EXPLICIT = "explicit"
    PHASE_DROP = "phase_drop"
    CASCADED = "cascaded"


class OrderField(str, Enum):
    """Top-level order fields tracked for unsaved changes and autosave."""

    CUSTOMER_NAME = "customer_name"
    DELIVERY_ADDRESS = "delivery_address"
    DELIVERY_DATE = "delivery_date"
    PRIORITY = "priority"
    ORDER_TYPE = "order_type"
    NOTES = "notes"


class ItemField(str, Enum):
    """Order item fields tracked for unsaved changes and autosave."""

    ITEM_CODE = "item_code"
    ITEM_DESCRIPTION = "item_description"
    REQUESTED_QUANTITY = "requested_quantity"
    DELIVERED_QUANTITY = "delivered_quantity"
    UNIT = "unit"
    WAREHOUSE = "warehouse"
    ITEM_STATUS = "item_status"


class Table(str, Enum):
    """Row store tables touched by the order lifecycle engine."""

    ORDERS = "orders"
    ORDER_ITEMS = "order_items"
    ORDER_HISTORY = "order_history"
    ORDER_ITEM_HISTORY = "order_item_history"
    ORDER_CHANGES = "order_changes"
    ORDER_COMPLETION_NOTES = "order_completion_notes"
    ORDER_COMMENTS = "order_comments"
    ORDER_TYPE_CONFIG = "order_type_config"
