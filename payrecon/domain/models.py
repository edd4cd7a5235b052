from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .enums import BillingCycle, Currency, EventSource, ProviderName, ResponseShape
from .statuses import OrderStatus, SubscriptionStatus


@dataclass
class Order:
    """A single payment attempt tying a plan selection to a provider transaction."""

    external_order_id: str
    provider: ProviderName
    user_id: str
    amount: int
    currency: Currency
    plan_id: str
    billing_cycle: BillingCycle
    id: int | None = None
    status: OrderStatus = OrderStatus.PENDING
    provider_order_id: str | None = None
    response_shape: ResponseShape | None = None
    redirect_target: str | None = None
    description: str | None = None
    customer_email: str | None = None
    customer_ip: str | None = None
    customer_data: dict[str, Any] = field(default_factory=dict)
    checkout_payload: dict[str, Any] = field(default_factory=dict)
    raw_provider_payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Subscription:
    """Durable entitlement giving a user ongoing access."""

    user_id: str
    plan_id: str
    billing_cycle: BillingCycle
    current_period_start: datetime
    current_period_end: datetime
    id: int | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    provider: ProviderName | None = None
    provider_subscription_id: str | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    payment_attempts: int = 0
    last_payment_order_id: str | None = None
    last_invoice_id: str | None = None
    amount: int | None = None
    currency: Currency | None = None
    canceled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PaymentEvent:
    """Provider-reported order status, from a webhook or a status poll."""

    provider: ProviderName
    provider_status: str
    provider_order_id: str | None = None
    external_order_id: str | None = None
    total_amount: int | None = None
    currency: str | None = None
    source: EventSource = EventSource.WEBHOOK
    event_id: str | None = None
    provider_subscription_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity supplied by the caller's auth layer."""

    user_id: str
    email: str | None = None
