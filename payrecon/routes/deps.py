from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import HTTPException, status

from payrecon.config import settings
from payrecon.domain.enums import ProviderName
from payrecon.errors import (
    ActiveSubscriptionExists,
    AuthenticationError,
    ConfigurationError,
    GatewayError,
    GatewayOrderNotFound,
    OrderLookupConflict,
    OrderNotFound,
    PaymentsError,
    PersistenceError,
    TransientGatewayError,
    UnexpectedResponseShape,
    ValidationError,
)
from payrecon.providers.factory import get_gateway
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.utils.clock import SystemClock

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> ReconciliationEngine:
    """Process-wide engine; gateways (and their token caches) live as long as it does."""
    clock = SystemClock()
    if settings.db_enabled:
        from payrecon.repositories.pg_store import PgOrderStore, PgSubscriptionStore

        orders, subscriptions = PgOrderStore(), PgSubscriptionStore()
    else:
        from payrecon.repositories.memory_store import InMemoryOrderStore, InMemorySubscriptionStore

        logger.warning("database not configured, using in-memory stores", extra={"event": "startup"})
        orders, subscriptions = InMemoryOrderStore(clock), InMemorySubscriptionStore(clock)
    gateways = {name: get_gateway(settings, name, clock=clock) for name in ProviderName}
    return ReconciliationEngine(orders, subscriptions, gateways, clock=clock, cfg=settings)


def to_http_error(exc: PaymentsError) -> HTTPException:
    """Translate a domain error into the HTTP answer the caller should see."""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ActiveSubscriptionExists):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Active subscription already exists")
    if isinstance(exc, (OrderNotFound, GatewayOrderNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if isinstance(exc, OrderLookupConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order lookup conflict")
    if isinstance(exc, TransientGatewayError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway temporarily unavailable, try again",
            headers={"Retry-After": "30"},
        )
    if isinstance(exc, (AuthenticationError, UnexpectedResponseShape)):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway error")
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Payment gateway not configured")
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Storage failure")
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway error")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")
