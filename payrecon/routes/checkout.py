from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from payrecon.domain.dtos import CheckoutRequest, CheckoutResponse
from payrecon.domain.enums import ResponseShape
from payrecon.domain.models import AuthenticatedUser
from payrecon.errors import PaymentsError
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.utils.security import get_client_ip, get_current_user

from .deps import get_engine, to_http_error

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
) -> CheckoutResponse:
    logger.info(
        "checkout received",
        extra={
            "endpoint": "/api/checkout",
            "method": "POST",
            "user_id": user.user_id,
            "amount": body.amount,
            "provider": body.provider.value if body.provider else None,
        },
    )
    try:
        result = await engine.start_checkout(user, body, customer_ip=get_client_ip(request.headers))
    except PaymentsError as exc:
        logger.warning(
            "checkout failed",
            extra={"endpoint": "/api/checkout", "user_id": user.user_id, "error": str(exc)},
        )
        raise to_http_error(exc) from exc
    logger.info(
        "checkout responded",
        extra={
            "endpoint": "/api/checkout",
            "external_order_id": result.order.external_order_id,
            "outcome": result.outcome.value,
            "redirect_to": result.redirect_uri,
        },
    )
    return CheckoutResponse(
        external_order_id=result.order.external_order_id,
        provider_order_id=result.order.provider_order_id,
        redirect_uri=result.redirect_uri,
        outcome=result.outcome,
        status=result.order.status,
    )


@router.get("/payu/payment-page/{external_order_id}")
async def payment_page(
    external_order_id: str,
    request: Request,
    user: AuthenticatedUser = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Response:
    """Serve the gateway's checkout for orders answered with an HTML page."""
    try:
        result = await engine.open_payment_page(
            user, external_order_id, customer_ip=get_client_ip(request.headers)
        )
    except PaymentsError as exc:
        raise to_http_error(exc) from exc
    if result.outcome_kind is ResponseShape.HTML_PAGE:
        return HTMLResponse(content=result.raw_body, status_code=status.HTTP_200_OK)
    if result.redirect_target:
        logger.info(
            "payment page redirect",
            extra={"external_order_id": external_order_id, "redirect_to": result.redirect_target},
        )
        return RedirectResponse(result.redirect_target, status_code=status.HTTP_302_FOUND)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment gateway error")
