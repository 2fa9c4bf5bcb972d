"""Order lifecycle exception hierarchy.

Four failure families surface to callers:

- ValidationError: a precondition is not met; nothing was written.
- ConflictError: another transition for the same order is in flight.
- PersistenceError: the primary write failed; no local state was committed.
- PartialFailure: the primary write succeeded but a dependent write (history,
  comment) failed. The primary change is kept and the gap is only logged.

None of these are retried automatically.
"""

from typing import Any, Optional


class OrderLifecycleError(Exception):
    """Base exception for order lifecycle errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(OrderLifecycleError):
    """Raised when a precondition for a write is not met."""

    pass


class CompletionJustificationRequired(ValidationError):
    """Raised when completing an order with pending items and no note.

    ``pending_items`` lists the incomplete items so the caller can prompt
    for a justification.
    """

    def __init__(self, message: str, pending_items: list[dict[str, Any]], **context: Any):
        super().__init__(message, **context)
        self.pending_items = pending_items


class ExceptionDetailsRequired(ValidationError):
    """Raised when moving to exception without comment and responsible party."""

    def __init__(self, message: str, missing: list[str], **context: Any):
        super().__init__(message, **context)
        self.missing = missing


class FieldTooLongError(ValidationError):
    """Raised when an edited value exceeds its maximum length."""

    def __init__(self, message: str, field: str, max_length: int, length: int, **context: Any):
        super().__init__(message, field=field, **context)
        self.field = field
        self.max_length = max_length
        self.length = length


class ItemsLockedError(ValidationError):
    """Raised when items are added or removed outside the early phases."""

    pass


class UnknownStatusError(ValidationError):
    """Raised when an undeclared status is requested as a transition target."""

    pass


class AuthorizationError(OrderLifecycleError):
    """Raised when the actor may not edit the target phase."""

    pass


class ConflictError(OrderLifecycleError):
    """Raised when an operation collides with one already in progress."""

    pass


class TransitionInProgressError(ConflictError):
    """Raised when a transition is requested while another is pending."""

    pass


class PersistenceError(OrderLifecycleError):
    """Raised when a primary write to the row store fails."""

    pass


class StoreError(PersistenceError):
    """Raised by row store implementations when a call fails."""

    pass


class TransitionPersistenceError(PersistenceError):
    """Raised when the status write of a transition fails."""

    pass


class OrderNotFoundError(OrderLifecycleError):
    """Raised when an order does not exist."""

    pass


class OrderItemNotFoundError(OrderLifecycleError):
    """Raised when an order item does not exist on the order."""

    pass


class UnreadableOrderError(OrderLifecycleError):
    """Raised when a stored order or item holds a value the lifecycle does not declare."""

    pass


class PartialFailure(OrderLifecycleError):
    """A dependent write failed after the primary write succeeded.

    Not raised to callers; instances are logged and attached to results.
    """

    def __init__(self, message: str, step: str, cause: Optional[BaseException] = None, **context: Any):
        super().__init__(message, step=step, **context)
        self.step = step
        self.cause = cause
