"""
Order lifecycle API endpoints.

This module implements the FastAPI router for the order pipeline: creating
orders, reading the phase board, explicit status changes, dropping orders on
board columns, item status changes and item add/remove. Lifecycle errors are
mapped to HTTP status codes in one place.
"""

from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from orderflow.api.deps import ActorId, Authorizer, OrderServiceDep
from orderflow.core.logging import bind_order_context, get_logger
from orderflow.schemas.orders import (
    BoardCard,
    BoardColumn,
    BoardResponse,
    DaysInPhaseResponse,
    ItemCreateRequest,
    ItemResponse,
    ItemStatusRequest,
    ItemStatusResponse,
    OrderCreateRequest,
    OrderResponse,
    PhaseDropRequest,
    PhaseInfo,
    StatusChangeRequest,
    TransitionResponse,
)
from orderflow.services.orders.enums import OrderCategory
from orderflow.services.orders.errors import (
    AuthorizationError,
    CompletionJustificationRequired,
    ConflictError,
    ExceptionDetailsRequired,
    OrderItemNotFoundError,
    OrderLifecycleError,
    OrderNotFoundError,
    PersistenceError,
    UnreadableOrderError,
    ValidationError,
)
from orderflow.services.orders.phases import (
    default_status_for_phase,
    phases_for_category,
    statuses_for_phase,
)
from orderflow.services.orders.state_machine import (
    ItemStatusResult,
    TransitionContext,
    TransitionResult,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _to_http(error: OrderLifecycleError, **log_context: Any) -> HTTPException:
    """Map a lifecycle error to an HTTP exception and log it."""
    detail: dict[str, Any] = {
        "error": type(error).__name__,
        "message": error.message,
    }

    if isinstance(error, CompletionJustificationRequired):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        detail["pending_items"] = error.pending_items
    elif isinstance(error, ExceptionDetailsRequired):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        detail["missing"] = error.missing
    elif isinstance(error, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, AuthorizationError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, UnreadableOrderError):
        code = status.HTTP_409_CONFLICT
        detail["fields"] = error.context.get("fields", [])
    elif isinstance(error, (OrderNotFoundError, OrderItemNotFoundError)):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, PersistenceError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    log = logger.error if code >= 500 else logger.warning
    log(
        "Order request failed",
        status_code=code,
        error=error.message,
        error_type=type(error).__name__,
        **log_context,
    )
    return HTTPException(status_code=code, detail=detail)


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        order=OrderResponse.from_order(result.order),
        changed=result.changed,
        origin=result.origin,
        old_status=result.old_status,
        new_status=result.new_status,
        delivery_date=result.delivery_date,
        warnings=[failure.message for failure in result.partial_failures],
    )


def _item_status_response(result: ItemStatusResult) -> ItemStatusResponse:
    cascaded = result.cascaded
    return ItemStatusResponse(
        order=OrderResponse.from_order(result.order),
        item=ItemResponse.from_item(result.item),
        changed=result.changed,
        old_status=result.old_status,
        new_status=result.new_status,
        cascaded_status=cascaded.new_status if cascaded is not None and cascaded.changed else None,
        production_released=result.production_released,
        warnings=[failure.message for failure in result.partial_failures],
    )


@router.get(
    "/phases",
    response_model=list[PhaseInfo],
    summary="List board phases",
    description="Phases visible for an order category, in pipeline order",
)
async def list_phases(
    order_category: Optional[OrderCategory] = Query(None, description="Order category"),
) -> list[PhaseInfo]:
    return [
        PhaseInfo(
            phase=phase,
            statuses=list(statuses_for_phase(phase)),
            default_status=default_status_for_phase(phase),
        )
        for phase in phases_for_category(order_category)
    ]


@router.get(
    "/board",
    response_model=BoardResponse,
    summary="Phase board",
    description="Orders grouped into phase columns",
)
async def get_board(
    service: OrderServiceDep,
    order_category: Optional[OrderCategory] = Query(None, description="Order category"),
) -> BoardResponse:
    try:
        columns = await service.board(order_category)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="board") from e

    board = [
        BoardColumn(phase=phase, orders=[BoardCard.from_row(row) for row in rows])
        for phase, rows in columns.items()
    ]
    return BoardResponse(columns=board, total=sum(len(column.orders) for column in board))


@router.get(
    "/days-in-phase",
    response_model=DaysInPhaseResponse,
    summary="Days in current status",
)
async def get_days_in_phase(
    service: OrderServiceDep,
    order_id: list[UUID] = Query(..., description="Order identifiers"),
) -> DaysInPhaseResponse:
    try:
        days = await service.days_in_phase(order_id)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="days_in_phase") from e
    return DaysInPhaseResponse(days=days)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
)
async def create_order(
    request: OrderCreateRequest,
    service: OrderServiceDep,
    actor_id: ActorId,
) -> OrderResponse:
    """
    Create an order with its items.

    Raises:
        HTTPException: 422 if validation fails, 503 if the store is unavailable
    """
    logger.info("Creating order", item_count=len(request.items), actor_id=actor_id)
    try:
        order = await service.create_order(
            customer_name=request.customer_name,
            items=[item.model_dump() for item in request.items],
            order_type=request.order_type,
            order_category=request.order_category,
            delivery_address=request.delivery_address,
            priority=request.priority,
            delivery_date=request.delivery_date,
            notes=request.notes,
            order_number=request.order_number,
            actor_id=actor_id,
        )
    except OrderLifecycleError as e:
        raise _to_http(e, operation="create_order") from e

    return OrderResponse.from_order(order)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(order_id: UUID, service: OrderServiceDep) -> OrderResponse:
    bind_order_context(str(order_id))
    try:
        order = await service.get_order(order_id)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="get_order", order_id=str(order_id)) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/status",
    response_model=TransitionResponse,
    summary="Change order status",
)
async def change_order_status(
    order_id: UUID,
    request: StatusChangeRequest,
    service: OrderServiceDep,
    actor_id: ActorId,
    authorizer: Authorizer,
) -> TransitionResponse:
    """
    Change an order to an explicit status.

    Raises:
        HTTPException: 422 when a completion note or exception details are
            missing, 403 when the phase is not editable, 409 when another
            transition is running, 503 when the status write fails
    """
    bind_order_context(str(order_id))
    context = TransitionContext(
        actor_id=actor_id,
        note=request.note,
        comment=request.comment,
        responsible=request.responsible,
        authorizer=authorizer,
    )
    try:
        result = await service.change_status(order_id, request.status, context)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="change_status", order_id=str(order_id), target=request.status) from e
    return _transition_response(result)


@router.post(
    "/{order_id}/phase",
    response_model=TransitionResponse,
    summary="Move order to phase",
    description="Drop an order on a board column; it takes the column's default status",
)
async def move_order_to_phase(
    order_id: UUID,
    request: PhaseDropRequest,
    service: OrderServiceDep,
    actor_id: ActorId,
    authorizer: Authorizer,
) -> TransitionResponse:
    bind_order_context(str(order_id))
    context = TransitionContext(actor_id=actor_id, authorizer=authorizer)
    try:
        result = await service.move_order_to_phase(order_id, request.phase, context)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="move_to_phase", order_id=str(order_id), phase=request.phase) from e
    return _transition_response(result)


@router.post(
    "/{order_id}/items",
    response_model=ItemResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add order item",
)
async def add_order_item(
    order_id: UUID,
    request: ItemCreateRequest,
    service: OrderServiceDep,
    actor_id: ActorId,
) -> ItemResponse:
    bind_order_context(str(order_id))
    try:
        order = await service.get_order(order_id)
        item = await service.add_item(order, request.model_dump(), actor_id=actor_id)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="add_item", order_id=str(order_id)) from e
    return ItemResponse.from_item(item)


@router.delete(
    "/{order_id}/items/{item_id}",
    response_model=ItemResponse,
    summary="Remove order item",
)
async def remove_order_item(
    order_id: UUID,
    item_id: UUID,
    service: OrderServiceDep,
    actor_id: ActorId,
) -> ItemResponse:
    bind_order_context(str(order_id))
    try:
        order = await service.get_order(order_id)
        item = await service.remove_item(order, item_id, actor_id=actor_id)
    except OrderLifecycleError as e:
        raise _to_http(e, operation="remove_item", order_id=str(order_id), item_id=str(item_id)) from e
    return ItemResponse.from_item(item)


@router.post(
    "/{order_id}/items/{item_id}/status",
    response_model=ItemStatusResponse,
    summary="Change item status",
    description="May move the order to purchases or mark it released to production",
)
async def change_item_status(
    order_id: UUID,
    item_id: UUID,
    request: ItemStatusRequest,
    service: OrderServiceDep,
    actor_id: ActorId,
) -> ItemStatusResponse:
    bind_order_context(str(order_id))
    context = TransitionContext(actor_id=actor_id)
    try:
        result = await service.change_item_status(order_id, item_id, request.item_status, context)
    except OrderLifecycleError as e:
        raise _to_http(
            e,
            operation="change_item_status",
            order_id=str(order_id),
            item_id=str(item_id),
        ) from e
    return _item_status_response(result)
