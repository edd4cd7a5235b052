from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from payrecon.domain.enums import BillingCycle, Currency, ProviderName, ResponseShape
from payrecon.domain.models import PaymentEvent
from payrecon.errors import ValidationError


@dataclass(frozen=True)
class AccessToken:
    """Short-lived bearer credential. ``expires_at`` None means it never expires."""

    value: str
    expires_at: datetime | None = None
    token_type: str = "bearer"


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_price: int
    quantity: int = 1


@dataclass(frozen=True)
class GatewayOrderRequest:
    """Provider-neutral order-creation request."""

    external_order_id: str
    description: str
    amount: int
    currency: Currency
    customer_email: str
    line_items: tuple[LineItem, ...]
    user_id: str
    plan_id: str
    billing_cycle: BillingCycle
    customer_ip: str = "127.0.0.1"
    customer_first_name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["currency"] = self.currency.value
        payload["billing_cycle"] = self.billing_cycle.value
        payload["line_items"] = [asdict(item) for item in self.line_items]
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GatewayOrderRequest":
        data = dict(payload)
        data["currency"] = Currency(data["currency"])
        data["billing_cycle"] = BillingCycle(data["billing_cycle"])
        data["line_items"] = tuple(LineItem(**item) for item in data.get("line_items") or [])
        return cls(**data)


@dataclass(frozen=True)
class GatewayOrderResult:
    """Normalized outcome of an order-creation call."""

    outcome_kind: ResponseShape
    provider_order_id: str | None = None
    redirect_target: str | None = None
    raw_body: str = ""
    status_code: int | None = None
    headers: dict[str, str] = field(default_factory=dict)


def validate_order_request(
    request: GatewayOrderRequest,
    *,
    currency: Currency,
    minimum_amount: int,
    provider: str | None = None,
) -> None:
    """Reject malformed requests locally instead of round-tripping them."""

    def fail(message: str) -> None:
        raise ValidationError(message, provider=provider)

    if not request.description or len(request.description.strip()) < 3:
        fail("Order description must have at least 3 characters")
    if request.currency != currency:
        fail(f"Currency must be {currency.value}")
    if request.amount < minimum_amount:
        fail(f"Amount must be at least {minimum_amount} minor units")
    if not request.customer_email:
        fail("Buyer email is required")
    if not request.line_items:
        fail("At least one line item is required")
    for item in request.line_items:
        if not item.name:
            fail("Line item name is required")
        if item.unit_price < 1:
            fail("Line item price must be positive")
        if item.quantity < 1:
            fail("Line item quantity must be positive")


class PaymentGateway(ABC):
    """Abstract payment gateway client."""

    name: ProviderName
    supported_currency: Currency = Currency.PLN
    minimum_amount: int = 100

    def validate(self, request: GatewayOrderRequest) -> None:
        validate_order_request(
            request,
            currency=self.supported_currency,
            minimum_amount=self.minimum_amount,
            provider=self.name.value,
        )

    @abstractmethod
    async def authenticate(self) -> AccessToken:
        """Return a valid bearer credential, refreshing the cached one if needed."""

    @abstractmethod
    async def create_order(
        self, request: GatewayOrderRequest, *, timeout: float | None = None
    ) -> GatewayOrderResult:
        """Validate and send an order; classify the provider's answer.

        Raises UnexpectedResponseShape when the answer fits no known shape.
        """

    @abstractmethod
    async def get_order_status(
        self,
        provider_order_id: str | None,
        *,
        external_order_id: str | None = None,
        timeout: float | None = None,
    ) -> PaymentEvent:
        """Read-only status query used for drift correction.

        Returns the provider-reported status as a poll-sourced PaymentEvent so
        it can be fed through the same transition logic as a webhook.
        """
