from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from payrecon.config import Settings, settings
from payrecon.domain.dtos import CheckoutRequest
from payrecon.domain.enums import EventSource, ProviderName, ResponseShape
from payrecon.domain.models import AuthenticatedUser, Order, PaymentEvent, Subscription
from payrecon.domain.statuses import OrderStatus
from payrecon.errors import (
    ActiveSubscriptionExists,
    ConfigurationError,
    GatewayError,
    OrderLookupConflict,
    OrderNotFound,
    PaymentsError,
    ValidationError,
)
from payrecon.providers.base import GatewayOrderRequest, GatewayOrderResult, LineItem, PaymentGateway
from payrecon.providers.stripe_checkout import event_from_session
from payrecon.repositories.base import OrderStore, StaleState, SubscriptionStore
from payrecon.utils.clock import Clock, SystemClock
from payrecon.utils.identifiers import describe_plan, generate_external_order_id
from payrecon.utils.retry import call_with_backoff

from .subscriptions import SubscriptionLifecycleManager
from .transitions import TransitionDecision, TransitionVerdict, decide_transition, map_provider_status

PAYMENT_PAGE_PATH = "/api/payu/payment-page/{external_order_id}"
# Key in raw_provider_payload naming the subscription an order activated
SUBSCRIPTION_LINK = "subscription_id"

SESSION_EVENTS = {
    "checkout.session.completed": None,
    "checkout.session.async_payment_succeeded": "paid",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "expired",
}
INVOICE_PAID_EVENTS = {"invoice.payment_succeeded", "invoice.paid"}


class ReconcileResult(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"
    ORPHAN = "orphan"
    UNKNOWN_STATUS = "unknown_status"


@dataclass(frozen=True)
class ReconciliationOutcome:
    result: ReconcileResult
    order: Order | None = None
    decision: TransitionDecision | None = None
    subscription: Subscription | None = None

    @property
    def status(self) -> OrderStatus | None:
        return self.order.status if self.order else None


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    redirect_uri: str
    outcome: ResponseShape


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if not subscription:
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    return str(subscription) if subscription else None


def _invoice_period(invoice: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    """Billing period of the first invoice line that carries one."""
    for line in (invoice.get("lines") or {}).get("data") or []:
        period = line.get("period") or {}
        if period.get("end"):
            return _from_epoch(period.get("start")), _from_epoch(period.get("end"))
    return None, None


def _subscription_period(obj: Mapping[str, Any]) -> tuple[datetime | None, datetime | None]:
    start, end = obj.get("current_period_start"), obj.get("current_period_end")
    if start is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start, end = items[0].get("current_period_start"), items[0].get("current_period_end")
    return _from_epoch(start), _from_epoch(end)


class ReconciliationEngine:
    """Drives orders from checkout to a terminal status.

    Webhooks and status polls both end up in ``apply_event`` so the two
    paths cannot disagree about an order.
    """

    def __init__(
        self,
        orders: OrderStore,
        subscriptions: SubscriptionStore,
        gateways: Mapping[ProviderName, PaymentGateway],
        *,
        clock: Clock | None = None,
        cfg: Settings = settings,
        lifecycle: SubscriptionLifecycleManager | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.orders = orders
        self.subscriptions = subscriptions
        self.gateways = dict(gateways)
        self.clock = clock or SystemClock()
        self.settings = cfg
        self.lifecycle = lifecycle or SubscriptionLifecycleManager(
            subscriptions,
            self.clock,
            trial_days=cfg.trial_days,
            failure_threshold=cfg.payment_failure_threshold,
        )
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)

    def gateway_for(self, provider: ProviderName) -> PaymentGateway:
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise ConfigurationError(f"Provider {provider.value} is not enabled", provider=provider.value)
        return gateway

    # Checkout

    async def start_checkout(
        self,
        user: AuthenticatedUser,
        request: CheckoutRequest,
        *,
        customer_ip: str = "127.0.0.1",
        timeout: float | None = None,
    ) -> CheckoutResult:
        provider = request.provider or ProviderName(self.settings.default_provider)
        gateway = self.gateway_for(provider)
        active = self.subscriptions.find_active(user.user_id)
        if active is not None:
            raise ActiveSubscriptionExists(f"User {user.user_id} already has an active subscription")

        description = describe_plan(request.plan_id, request.billing_cycle)
        customer = request.customer_data
        sent: list[GatewayOrderRequest] = []

        async def attempt() -> GatewayOrderResult:
            # A timed-out create may have reached the provider; a retry never reuses its extOrderId
            gateway_request = GatewayOrderRequest(
                external_order_id=generate_external_order_id(request.plan_id, user.user_id, self.clock.now()),
                description=description,
                amount=request.amount,
                currency=gateway.supported_currency,
                customer_email=customer.email or (user.email or ""),
                line_items=(LineItem(name=description, unit_price=request.amount, quantity=1),),
                user_id=user.user_id,
                plan_id=request.plan_id,
                billing_cycle=request.billing_cycle,
                customer_ip=customer_ip,
                customer_first_name=customer.first_name or customer.company_name,
            )
            sent.append(gateway_request)
            self.logger.info(
                "creating order with provider",
                extra={
                    "external_order_id": gateway_request.external_order_id,
                    "user_id": user.user_id,
                    "amount": request.amount,
                    "currency": gateway.supported_currency.value,
                    "provider": provider.value,
                    "attempt": len(sent),
                },
            )
            return await gateway.create_order(gateway_request, timeout=timeout)

        result = await call_with_backoff(
            attempt,
            attempts=self.settings.checkout_max_attempts,
            base_delay=self.settings.checkout_backoff_base_seconds,
            sleep=self.sleep,
        )
        gateway_request = sent[-1]
        external_order_id = gateway_request.external_order_id
        if result.outcome_kind is ResponseShape.HTML_PAGE:
            redirect_uri = self.payment_page_url(external_order_id)
        else:
            redirect_uri = result.redirect_target or ""
        order = Order(
            external_order_id=external_order_id,
            provider=provider,
            user_id=user.user_id,
            amount=request.amount,
            currency=gateway.supported_currency,
            plan_id=request.plan_id,
            billing_cycle=request.billing_cycle,
            provider_order_id=result.provider_order_id,
            response_shape=result.outcome_kind,
            redirect_target=redirect_uri,
            description=description,
            customer_email=gateway_request.customer_email,
            customer_ip=customer_ip,
            customer_data=customer.model_dump(by_alias=True, exclude_none=True),
            checkout_payload=gateway_request.to_payload(),
            raw_provider_payload={
                "create": {"status_code": result.status_code, "shape": result.outcome_kind.value}
            },
        )
        stored = self.orders.insert(order)
        self.logger.info(
            "order stored",
            extra={
                "external_order_id": external_order_id,
                "provider_order_id": stored.provider_order_id,
                "status": stored.status,
                "outcome": result.outcome_kind.value,
            },
        )
        return CheckoutResult(order=stored, redirect_uri=redirect_uri, outcome=result.outcome_kind)

    def payment_page_url(self, external_order_id: str) -> str:
        base = self.settings.public_base_url.rstrip("/")
        return base + PAYMENT_PAGE_PATH.format(external_order_id=external_order_id)

    async def open_payment_page(
        self,
        user: AuthenticatedUser,
        external_order_id: str,
        *,
        customer_ip: str | None = None,
    ) -> GatewayOrderResult:
        """Replay the stored order request for orders answered with an HTML page."""
        order = self.orders.find_by_external_id(external_order_id)
        if order is None or order.user_id != user.user_id:
            raise OrderNotFound(external_order_id)
        if order.status is not OrderStatus.PENDING:
            raise ValidationError(f"Order {external_order_id} is already {order.status.value}")
        if not order.checkout_payload:
            raise ValidationError(f"Order {external_order_id} cannot be replayed")
        request = GatewayOrderRequest.from_payload(order.checkout_payload)
        if customer_ip:
            request = replace(request, customer_ip=customer_ip)
        gateway = self.gateway_for(order.provider)
        result = await gateway.create_order(request)
        redirect_target = None if result.outcome_kind is ResponseShape.HTML_PAGE else result.redirect_target
        if result.provider_order_id or redirect_target:
            self.orders.update_provider_reference(
                external_order_id,
                provider_order_id=result.provider_order_id,
                redirect_target=redirect_target,
            )
        self.logger.info(
            "payment page replayed",
            extra={
                "external_order_id": external_order_id,
                "provider_order_id": result.provider_order_id,
                "outcome": result.outcome_kind.value,
            },
        )
        return result

    # Inbound events

    def _locate(self, event: PaymentEvent) -> Order | None:
        by_external = (
            self.orders.find_by_external_id(event.external_order_id) if event.external_order_id else None
        )
        by_provider = (
            self.orders.find_by_provider_id(event.provider.value, event.provider_order_id)
            if event.provider_order_id
            else None
        )
        if (
            by_external is not None
            and by_provider is not None
            and by_external.external_order_id != by_provider.external_order_id
        ):
            self.logger.error(
                "order lookup conflict",
                extra={
                    "external_order_id": event.external_order_id,
                    "provider_order_id": event.provider_order_id,
                    "provider": event.provider.value,
                },
            )
            raise OrderLookupConflict(
                "External and provider order ids resolve to different orders",
                external_order_id=event.external_order_id,
                provider_order_id=event.provider_order_id,
            )
        return by_external or by_provider

    def _record_inbound(self, event: PaymentEvent, order: Order | None, event_type: str) -> None:
        if event.source is not EventSource.WEBHOOK:
            return
        self.orders.record_webhook(
            provider=event.provider.value,
            event_id=event.event_id,
            event_type=event_type,
            verification_status="VERIFIED",
            payload=event.raw,
            external_order_id=order.external_order_id if order else event.external_order_id,
            orphan=order is None,
        )

    def _check_amount(self, order: Order, event: PaymentEvent) -> None:
        if event.total_amount is not None and event.total_amount != order.amount:
            self.logger.warning(
                "reported amount differs from order",
                extra={
                    "external_order_id": order.external_order_id,
                    "amount": event.total_amount,
                    "source": event.source,
                },
            )
        if event.currency and event.currency.upper() != order.currency.value:
            self.logger.warning(
                "reported currency differs from order",
                extra={"external_order_id": order.external_order_id, "currency": event.currency},
            )

    def _activate(self, order: Order, event: PaymentEvent) -> tuple[Order, Subscription]:
        subscription = self.lifecycle.activate(order, provider_subscription_id=event.provider_subscription_id)
        linked = self.orders.merge_payload(order.external_order_id, {SUBSCRIPTION_LINK: subscription.id})
        return linked, subscription

    def _ensure_subscription(self, order: Order, event: PaymentEvent) -> Subscription | None:
        """Return the subscription a completed order produced.

        An order whose activation already ran is linked to its subscription and
        never creates another one, even when that subscription was canceled since.
        Only an order completed without a recorded activation is activated here.
        """
        linked = order.raw_provider_payload.get(SUBSCRIPTION_LINK)
        if linked is not None:
            return self.subscriptions.get(int(linked))
        latest = self.subscriptions.find_latest(order.user_id)
        if latest is not None and latest.last_payment_order_id == order.external_order_id:
            self.orders.merge_payload(order.external_order_id, {SUBSCRIPTION_LINK: latest.id})
            return latest
        return self._activate(order, event)[1]

    def apply_event(self, event: PaymentEvent, *, event_type: str = "order.status") -> ReconciliationOutcome:
        order = self._locate(event)
        self._record_inbound(event, order, event_type)
        if order is None:
            self.logger.warning(
                "orphan payment event",
                extra={
                    "provider": event.provider.value,
                    "external_order_id": event.external_order_id,
                    "provider_order_id": event.provider_order_id,
                    "status": event.provider_status,
                    "source": event.source,
                },
            )
            return ReconciliationOutcome(result=ReconcileResult.ORPHAN)

        reported = map_provider_status(event.provider, event.provider_status)
        if reported is None:
            self.logger.warning(
                "unknown provider status",
                extra={
                    "external_order_id": order.external_order_id,
                    "provider": event.provider.value,
                    "status": event.provider_status,
                },
            )
            return ReconciliationOutcome(result=ReconcileResult.UNKNOWN_STATUS, order=order)

        self._check_amount(order, event)
        decision = decide_transition(order.status, reported)
        log_extra = {
            "external_order_id": order.external_order_id,
            "provider_order_id": event.provider_order_id or order.provider_order_id,
            "from_status": order.status,
            "to_status": reported,
            "verdict": decision.verdict,
            "source": event.source,
        }

        if decision.verdict is TransitionVerdict.NO_CHANGE:
            return ReconciliationOutcome(result=ReconcileResult.NO_CHANGE, order=order, decision=decision)

        if decision.verdict is TransitionVerdict.DUPLICATE:
            self.logger.info("duplicate status report", extra=log_extra)
            subscription = None
            if order.status is OrderStatus.COMPLETED:
                subscription = self._ensure_subscription(order, event)
            return ReconciliationOutcome(
                result=ReconcileResult.DUPLICATE, order=order, decision=decision, subscription=subscription
            )

        if decision.verdict is not TransitionVerdict.APPLY:
            self.logger.warning("status report ignored", extra=log_extra)
            return ReconciliationOutcome(result=ReconcileResult.IGNORED, order=order, decision=decision)

        updated = self.orders.update_status(
            order.external_order_id,
            order.status,
            reported,
            extra={
                "last_event": {
                    "source": event.source.value,
                    "provider_status": event.provider_status,
                    "event_id": event.event_id,
                    "received_at": self.clock.now().isoformat(),
                    "payload": event.raw,
                }
            },
            provider_order_id=event.provider_order_id,
        )
        if isinstance(updated, StaleState):
            self.logger.info(
                "concurrent update won", extra={**log_extra, "status": updated.current}
            )
            current = replace(order, status=updated.current)
            return ReconciliationOutcome(result=ReconcileResult.STALE, order=current, decision=decision)

        self.logger.info("order status changed", extra=log_extra)
        subscription = None
        if updated.status is OrderStatus.COMPLETED:
            updated, subscription = self._activate(updated, event)
        return ReconciliationOutcome(
            result=ReconcileResult.APPLIED, order=updated, decision=decision, subscription=subscription
        )

    def handle_stripe_event(self, event: Mapping[str, Any]) -> ReconciliationOutcome:
        """Dispatch a verified Stripe event by type."""
        event_id = str(event.get("id") or "") or None
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in SESSION_EVENTS:
            payment_event = event_from_session(obj, event_id=event_id)
            forced_status = SESSION_EVENTS[event_type]
            if forced_status:
                payment_event = replace(payment_event, provider_status=forced_status)
            return self.apply_event(payment_event, event_type=event_type)

        if event_id and self.orders.webhook_processed(ProviderName.STRIPE.value, event_id):
            self.logger.info("stripe event already processed", extra={"event": event_id, "event_type": event_type})
            return ReconciliationOutcome(result=ReconcileResult.DUPLICATE)

        if event_type in INVOICE_PAID_EVENTS or event_type == "invoice.payment_failed":
            outcome = self._handle_invoice(event_type, obj)
        elif event_type in {"customer.subscription.updated", "customer.subscription.deleted"}:
            outcome = self._handle_subscription(event_type, obj)
        else:
            self.logger.info("unhandled stripe event", extra={"event_type": event_type, "event": event_id})
            outcome = ReconciliationOutcome(result=ReconcileResult.IGNORED)

        self.orders.record_webhook(
            provider=ProviderName.STRIPE.value,
            event_id=event_id,
            event_type=event_type,
            verification_status="VERIFIED",
            payload=dict(event),
            orphan=outcome.result is ReconcileResult.ORPHAN,
        )
        return outcome

    def _stripe_orphan(self, event_type: str, provider_subscription_id: str | None) -> ReconciliationOutcome:
        self.logger.warning(
            "stripe event for unknown subscription",
            extra={"event_type": event_type, "subscription_id": provider_subscription_id},
        )
        return ReconciliationOutcome(result=ReconcileResult.ORPHAN)

    def _handle_invoice(self, event_type: str, invoice: Mapping[str, Any]) -> ReconciliationOutcome:
        provider_subscription_id = _invoice_subscription_id(invoice)
        subscription = (
            self.subscriptions.find_by_provider_subscription_id(provider_subscription_id)
            if provider_subscription_id
            else None
        )
        if event_type in INVOICE_PAID_EVENTS and invoice.get("billing_reason") == "subscription_create":
            # First invoice is covered by checkout.session.completed
            return ReconciliationOutcome(result=ReconcileResult.IGNORED, subscription=subscription)
        if subscription is None:
            return self._stripe_orphan(event_type, provider_subscription_id)
        if event_type in INVOICE_PAID_EVENTS:
            invoice_id = str(invoice.get("id") or "") or None
            if invoice_id and subscription.last_invoice_id == invoice_id:
                return ReconciliationOutcome(result=ReconcileResult.DUPLICATE, subscription=subscription)
            period_start, period_end = _invoice_period(invoice)
            saved = self.lifecycle.renew(
                subscription, invoice_id, period_start=period_start, period_end=period_end
            )
        else:
            saved = self.lifecycle.record_payment_failure(subscription)
        return ReconciliationOutcome(result=ReconcileResult.APPLIED, subscription=saved)

    def _handle_subscription(self, event_type: str, obj: Mapping[str, Any]) -> ReconciliationOutcome:
        provider_subscription_id = str(obj.get("id") or "") or None
        subscription = (
            self.subscriptions.find_by_provider_subscription_id(provider_subscription_id)
            if provider_subscription_id
            else None
        )
        if subscription is None:
            return self._stripe_orphan(event_type, provider_subscription_id)
        if event_type == "customer.subscription.deleted":
            saved = self.lifecycle.cancel(subscription)
        else:
            period_start, period_end = _subscription_period(obj)
            saved = self.lifecycle.sync_provider_status(
                subscription,
                str(obj.get("status") or ""),
                period_start=period_start,
                period_end=period_end,
            )
        return ReconciliationOutcome(result=ReconcileResult.APPLIED, subscription=saved)

    # Drift correction

    async def poll_order(self, external_order_id: str, *, timeout: float | None = None) -> ReconciliationOutcome:
        order = self.orders.find_by_external_id(external_order_id)
        if order is None:
            raise OrderNotFound(external_order_id)
        gateway = self.gateway_for(order.provider)
        event = await gateway.get_order_status(
            order.provider_order_id,
            external_order_id=order.external_order_id,
            timeout=timeout,
        )
        if not event.external_order_id:
            event = replace(event, external_order_id=order.external_order_id)
        return self.apply_event(event, event_type="poll")

    async def reconcile_pending(self, window: timedelta | None = None) -> list[ReconciliationOutcome]:
        """Poll every order still PENDING after ``window``; gateway failures are skipped."""
        window = window or timedelta(minutes=self.settings.drift_window_minutes)
        cutoff = self.clock.now() - window
        outcomes: list[ReconciliationOutcome] = []
        for order in self.orders.list_pending(cutoff):
            try:
                outcomes.append(await self.poll_order(order.external_order_id))
            except GatewayError as exc:
                self.logger.warning(
                    "drift poll failed",
                    extra={
                        "external_order_id": order.external_order_id,
                        "provider": order.provider.value,
                        "error": str(exc),
                    },
                )
            except PaymentsError as exc:
                self.logger.error(
                    "drift reconciliation failed",
                    extra={
                        "external_order_id": order.external_order_id,
                        "provider": order.provider.value,
                        "error": str(exc),
                    },
                )
        self.logger.info(
            "pending orders reconciled",
            extra={"outcome": dict(Counter(o.result.value for o in outcomes))},
        )
        return outcomes
