from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status

from payrecon.domain.dtos import OrderStatusResponse, ProviderStatusInfo, ReconcileResponse
from payrecon.domain.models import AuthenticatedUser
from payrecon.errors import GatewayError, PaymentsError
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.services.transitions import map_provider_status
from payrecon.utils.security import get_current_user, verify_bearer_token

from .deps import get_engine, to_http_error

router = APIRouter(prefix="/api/orders")
logger = logging.getLogger(__name__)


@router.get("/{external_order_id}", response_model=OrderStatusResponse)
async def get_order(
    external_order_id: str,
    live: bool = Query(default=True, description="Also query the provider"),
    user: AuthenticatedUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
) -> OrderStatusResponse:
    order = engine.orders.find_by_external_id(external_order_id)
    if order is None or order.user_id != user.user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    provider_status: ProviderStatusInfo | None = None
    if live:
        try:
            gateway = engine.gateway_for(order.provider)
            event = await gateway.get_order_status(
                order.provider_order_id, external_order_id=order.external_order_id
            )
            provider_status = ProviderStatusInfo(
                status=event.provider_status,
                mapped_status=map_provider_status(order.provider, event.provider_status),
            )
        except GatewayError as exc:
            logger.info(
                "provider status unavailable",
                extra={"external_order_id": external_order_id, "error": str(exc)},
            )
            provider_status = ProviderStatusInfo(error=str(exc))

    return OrderStatusResponse(
        external_order_id=order.external_order_id,
        provider_order_id=order.provider_order_id,
        provider=order.provider,
        status=order.status,
        amount=order.amount,
        currency=order.currency.value,
        plan_id=order.plan_id,
        billing_cycle=order.billing_cycle,
        redirect_uri=order.redirect_target,
        created_at=order.created_at,
        updated_at=order.updated_at,
        provider_status=provider_status,
    )


@router.post(
    "/reconcile-pending",
    response_model=list[ReconcileResponse],
    dependencies=[Depends(verify_bearer_token)],
)
async def reconcile_pending(
    window_minutes: int | None = Query(default=None, ge=0, alias="windowMinutes"),
    engine: ReconciliationEngine = Depends(get_engine),
) -> list[ReconcileResponse]:
    """Drift correction sweep, meant to be triggered by a scheduler."""
    window = timedelta(minutes=window_minutes) if window_minutes is not None else None
    try:
        outcomes = await engine.reconcile_pending(window)
    except PaymentsError as exc:
        raise to_http_error(exc) from exc
    return [
        ReconcileResponse(
            external_order_id=o.order.external_order_id if o.order else None,
            result=o.result.value,
            status=o.status,
        )
        for o in outcomes
    ]


@router.post(
    "/{external_order_id}/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(verify_bearer_token)],
)
async def reconcile_order(
    external_order_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> ReconcileResponse:
    try:
        outcome = await engine.poll_order(external_order_id)
    except PaymentsError as exc:
        raise to_http_error(exc) from exc
    logger.info(
        "order reconciled",
        extra={
            "endpoint": "/api/orders/reconcile",
            "external_order_id": external_order_id,
            "outcome": outcome.result.value,
            "status": outcome.status,
        },
    )
    return ReconcileResponse(
        external_order_id=external_order_id,
        result=outcome.result.value,
        status=outcome.status,
    )
