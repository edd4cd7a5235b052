from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Mapping, TypeVar

import stripe  # type: ignore[import-untyped]

from payrecon.config import Settings
from payrecon.domain.enums import BillingCycle, Currency, EventSource, ProviderName, ResponseShape
from payrecon.domain.models import PaymentEvent
from payrecon.errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayOrderNotFound,
    TransientGatewayError,
    UnexpectedResponseShape,
    ValidationError,
)

from .base import AccessToken, GatewayOrderRequest, GatewayOrderResult, PaymentGateway
from .shapes import classify_payload

logger = logging.getLogger(__name__)

PROVIDER = ProviderName.STRIPE.value
T = TypeVar("T")

INTERVALS = {BillingCycle.MONTHLY: "month", BillingCycle.YEARLY: "year"}


def session_status(session: Mapping[str, Any]) -> str:
    """Collapse a Checkout Session into one provider status string."""
    if session.get("status") == "expired":
        return "expired"
    return str(session.get("payment_status") or session.get("status") or "")


def event_from_session(
    session: Mapping[str, Any],
    *,
    source: EventSource = EventSource.WEBHOOK,
    event_id: str | None = None,
) -> PaymentEvent:
    metadata = session.get("metadata") or {}
    external_order_id = metadata.get("ext_order_id") or session.get("client_reference_id")
    currency = session.get("currency")
    subscription = session.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    amount = session.get("amount_total")
    return PaymentEvent(
        provider=ProviderName.STRIPE,
        provider_status=session_status(session),
        provider_order_id=str(session["id"]) if session.get("id") else None,
        external_order_id=str(external_order_id) if external_order_id else None,
        total_amount=int(amount) if amount is not None else None,
        currency=str(currency).upper() if currency else None,
        source=source,
        event_id=event_id,
        provider_subscription_id=str(subscription) if subscription else None,
        raw=dict(session),
    )


class StripeCheckoutGateway(PaymentGateway):
    """Stripe Checkout implementation.

    create_order(): creates a subscription-mode Checkout Session
    get_order_status(): retrieves the Session and reports its payment status
    """

    name = ProviderName.STRIPE
    supported_currency = Currency.PLN
    minimum_amount = 100

    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_key = settings.stripe_secret_key

    async def authenticate(self) -> AccessToken:
        if not self.api_key:
            raise ConfigurationError("Stripe secret key not configured", provider=PROVIDER)
        return AccessToken(value=self.api_key)

    async def _call(self, operation: str, fn: Callable[[], T], timeout: float) -> T:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._log_event(operation=operation, error_message="timeout", started=started)
            raise TransientGatewayError(f"Stripe {operation} timed out", provider=PROVIDER) from exc
        except stripe.AuthenticationError as exc:
            self._log_event(operation=operation, error_message=str(exc), started=started)
            raise AuthenticationError(str(exc), provider=PROVIDER) from exc
        except stripe.InvalidRequestError as exc:
            self._log_event(operation=operation, error_message=str(exc), started=started)
            if getattr(exc, "http_status", None) == 404:
                raise GatewayOrderNotFound(str(exc), provider=PROVIDER) from exc
            raise ValidationError(str(exc), provider=PROVIDER) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            self._log_event(operation=operation, error_message=str(exc), started=started)
            raise TransientGatewayError(str(exc), provider=PROVIDER) from exc
        except stripe.StripeError as exc:
            self._log_event(operation=operation, error_message=str(exc), started=started)
            status = getattr(exc, "http_status", None)
            if status is None or status >= 500:
                raise TransientGatewayError(str(exc), provider=PROVIDER) from exc
            raise UnexpectedResponseShape(
                str(exc), provider=PROVIDER, status_code=status, raw_body=str(exc)
            ) from exc
        self._log_event(operation=operation, response_status=200, started=started)
        return result

    def build_session_kwargs(self, request: GatewayOrderRequest) -> Dict[str, Any]:
        item = request.line_items[0]
        metadata = {
            "ext_order_id": request.external_order_id,
            "user_id": request.user_id,
            "plan_id": request.plan_id,
            "billing_cycle": request.billing_cycle.value,
        }
        return {
            "mode": "subscription",
            "success_url": self.settings.stripe_success_url,
            "cancel_url": self.settings.stripe_cancel_url,
            "customer_email": request.customer_email,
            "client_reference_id": request.external_order_id,
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency.value.lower(),
                        "product_data": {"name": item.name},
                        "unit_amount": item.unit_price,
                        "recurring": {"interval": INTERVALS[request.billing_cycle]},
                    },
                    "quantity": item.quantity,
                }
            ],
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }

    async def create_order(
        self, request: GatewayOrderRequest, *, timeout: float | None = None
    ) -> GatewayOrderResult:
        self.validate(request)
        token = await self.authenticate()
        session_kwargs = self.build_session_kwargs(request)

        def _create_session() -> Any:
            return stripe.checkout.Session.create(api_key=token.value, **session_kwargs)

        session = await self._call(
            "CREATE", _create_session, timeout or self.settings.order_timeout_seconds
        )
        result = classify_payload(
            {"url": session.get("url"), "id": session.get("id")},
            status_code=200,
        )
        if result.outcome_kind is ResponseShape.UNEXPECTED:
            logger.error(
                "stripe session without checkout url",
                extra={
                    "provider": PROVIDER,
                    "external_order_id": request.external_order_id,
                    "raw_body": result.raw_body,
                },
            )
            raise UnexpectedResponseShape(
                "Stripe session has no checkout url",
                provider=PROVIDER,
                status_code=200,
                raw_body=result.raw_body,
            )
        logger.info(
            "stripe session created",
            extra={
                "provider": PROVIDER,
                "external_order_id": request.external_order_id,
                "provider_order_id": result.provider_order_id,
            },
        )
        return result

    async def get_order_status(
        self,
        provider_order_id: str | None,
        *,
        external_order_id: str | None = None,
        timeout: float | None = None,
    ) -> PaymentEvent:
        if not provider_order_id:
            raise ValidationError("Stripe status query needs a session id", provider=PROVIDER)
        token = await self.authenticate()

        def _retrieve() -> Any:
            return stripe.checkout.Session.retrieve(provider_order_id, api_key=token.value)

        session = await self._call(
            "STATUS", _retrieve, timeout or self.settings.status_timeout_seconds
        )
        return event_from_session(session, source=EventSource.POLL)

    def _log_event(
        self,
        *,
        operation: str,
        started: float,
        response_status: int | None = None,
        error_message: str | None = None,
    ) -> None:
        logger.info(
            "provider call",
            extra={
                "provider": PROVIDER,
                "event": operation,
                "response_code": response_status,
                "error": error_message,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
