from __future__ import annotations

import json
import logging
from functools import partial
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from payrecon.config import settings
from payrecon.domain.dtos import WebhookAck
from payrecon.errors import PaymentsError
from payrecon.providers.payu import PayUGateway
from payrecon.services.reconciliation import ReconciliationEngine
from payrecon.utils.signatures import (
    SignatureCheck,
    check_signature,
    verify_payu_signature,
    verify_stripe_signature,
)

from .deps import get_engine, to_http_error

router = APIRouter(prefix="/api")
logger = logging.getLogger(__name__)

PAYU_SIGNATURE_HEADERS = ("openpayu-signature", "x-openpayu-signature")


def _reject_signature(endpoint: str, check: SignatureCheck) -> HTTPException:
    logger.warning(
        "webhook signature rejected",
        extra={"endpoint": endpoint, "event": "security", "outcome": check.value},
    )
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")


def _parse_json(raw_body: bytes, endpoint: str) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        logger.warning("webhook invalid json", extra={"endpoint": endpoint, "error": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc
    if not isinstance(payload, dict):
        logger.warning("webhook unexpected payload", extra={"endpoint": endpoint})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload")
    return payload


@router.post("/payu/webhook", response_model=WebhookAck)
async def payu_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
) -> WebhookAck:
    """Handle PayU order notifications.

    - Verifies ``OpenPayu-Signature`` over the raw body with the second key.
    - Unsigned notifications pass only when explicitly allowed outside production.
    - Unknown orders are acknowledged and kept for review.
    """
    endpoint = "/api/payu/webhook"
    raw_body = await request.body()
    header = next((request.headers.get(h) for h in PAYU_SIGNATURE_HEADERS if request.headers.get(h)), None)
    second_key = settings.payu_credentials["second_key"]

    if not header or not header.strip():
        if not settings.unsigned_webhooks_allowed:
            raise _reject_signature(endpoint, SignatureCheck.MISSING)
        logger.warning(
            "unsigned payu webhook accepted",
            extra={"endpoint": endpoint, "event": "security", "source": settings.app_env},
        )
    else:
        if not second_key:
            logger.error("payu second key missing", extra={"endpoint": endpoint})
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="PayU webhook not configured"
            )
        check = check_signature(verify_payu_signature, raw_body, header, second_key)
        if check is not SignatureCheck.VALID:
            raise _reject_signature(endpoint, check)

    payload = _parse_json(raw_body, endpoint)
    try:
        event = PayUGateway.parse_notification(payload)
    except ValueError as exc:
        logger.warning("payu webhook unexpected payload", extra={"endpoint": endpoint, "error": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook payload") from exc

    logger.info(
        "payu webhook received",
        extra={
            "endpoint": endpoint,
            "external_order_id": event.external_order_id,
            "provider_order_id": event.provider_order_id,
            "status": event.provider_status,
        },
    )
    try:
        outcome = engine.apply_event(event, event_type=f"order.{event.provider_status.lower()}")
    except PaymentsError as exc:
        logger.error("payu webhook processing failed", extra={"endpoint": endpoint, "error": str(exc)})
        raise to_http_error(exc) from exc
    return WebhookAck(success=True, result=outcome.result.value)


@router.post("/stripe/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
) -> WebhookAck:
    """Handle Stripe webhooks (checkout sessions, invoices, subscriptions)."""
    endpoint = "/api/stripe/webhook"
    if not settings.stripe_webhook_secret:
        logger.error("stripe webhook secret missing", extra={"endpoint": endpoint})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Stripe webhook not configured"
        )
    raw_body = await request.body()
    verifier = partial(verify_stripe_signature, tolerance=settings.stripe_webhook_tolerance_seconds)
    check = check_signature(
        verifier, raw_body, request.headers.get("stripe-signature"), settings.stripe_webhook_secret
    )
    if check is not SignatureCheck.VALID:
        raise _reject_signature(endpoint, check)

    event = _parse_json(raw_body, endpoint)
    logger.info(
        "stripe webhook received",
        extra={"endpoint": endpoint, "event": event.get("id"), "event_type": event.get("type")},
    )
    try:
        outcome = engine.handle_stripe_event(event)
    except PaymentsError as exc:
        logger.error("stripe webhook processing failed", extra={"endpoint": endpoint, "error": str(exc)})
        raise to_http_error(exc) from exc
    return WebhookAck(success=True, result=outcome.result.value)
