"""
FastAPI dependencies for the order lifecycle API.

The order service is built once per process by the application lifespan and
stored on ``app.state``. The acting user and the phases they may edit are
read from request headers set by the fronting gateway.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status

from orderflow.core.config import Settings
from orderflow.core.logging import get_logger, set_actor_id
from orderflow.realtime.events import ChangeFeed
from orderflow.realtime.memory_feed import InMemoryChangeFeed
from orderflow.realtime.redis_feed import get_redis_change_feed
from orderflow.services.notifications.service import NotificationService
from orderflow.services.orders.authorization import (
    AllowAllPhases,
    PhaseAuthorizer,
    StaticPhasePermissions,
)
from orderflow.services.orders.repository import SqlAlchemyRowStore
from orderflow.services.orders.service import OrderService
from orderflow.services.orders.store import InMemoryRowStore, RowStore

logger = get_logger(__name__)


async def build_order_service(settings: Settings) -> OrderService:
    """
    Build the order service from the configured backends.

    Args:
        settings: Application settings selecting store and feed backends

    Returns:
        OrderService wired to the selected row store and change feed
    """
    feed: ChangeFeed
    if settings.realtime_backend == "redis":
        feed = await get_redis_change_feed()
    else:
        feed = InMemoryChangeFeed()

    store: RowStore
    if settings.store_backend == "postgres":
        store = SqlAlchemyRowStore(feed=feed)
    else:
        store = InMemoryRowStore(feed=feed)

    logger.info(
        "Order service backends selected",
        store_backend=settings.store_backend,
        realtime_backend=settings.realtime_backend,
    )
    return OrderService(
        store,
        feed=feed,
        notifications=NotificationService(settings.notification_history_size),
        settings=settings,
    )


def get_order_service(request: Request) -> OrderService:
    """
    Return the process-wide order service.

    Raises:
        HTTPException: 503 if the application has not finished starting
    """
    service: Optional[OrderService] = getattr(request.app.state, "order_service", None)
    if service is None:
        logger.error("Order service requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting",
        )
    return service


def get_actor_id(
    x_actor_id: Annotated[Optional[str], Header()] = None,
) -> Optional[str]:
    """Bind the acting user from the ``X-Actor-Id`` header to the log context."""
    actor_id = x_actor_id.strip() if x_actor_id else None
    set_actor_id(actor_id or None)
    return actor_id or None


def get_phase_authorizer(
    x_allowed_phases: Annotated[Optional[str], Header()] = None,
) -> PhaseAuthorizer:
    """
    Build the phase authorizer from the ``X-Allowed-Phases`` header.

    A missing header permits every phase; otherwise it is a comma separated
    list of phase names.

    Raises:
        HTTPException: 400 if the header names an unknown phase
    """
    if x_allowed_phases is None:
        return AllowAllPhases()

    names = [name.strip() for name in x_allowed_phases.split(",") if name.strip()]
    try:
        return StaticPhasePermissions(names)
    except ValueError as e:
        logger.warning("Invalid allowed phases header", header=x_allowed_phases)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e


OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
ActorId = Annotated[Optional[str], Depends(get_actor_id)]
Authorizer = Annotated[PhaseAuthorizer, Depends(get_phase_authorizer)]
