from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from payrecon.domain.models import Order, Subscription
from payrecon.domain.statuses import OrderStatus


@dataclass(frozen=True)
class StaleState:
    """Compare-and-set lost: the row no longer had the expected status."""

    current: OrderStatus


class OrderStore(Protocol):
    def find_by_external_id(self, external_order_id: str) -> Order | None: ...

    def find_by_provider_id(self, provider: str, provider_order_id: str) -> Order | None: ...

    def insert(self, order: Order) -> Order: ...

    def update_status(
        self,
        external_order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        *,
        extra: dict[str, Any] | None = None,
        provider_order_id: str | None = None,
    ) -> Order | StaleState: ...

    def update_provider_reference(
        self,
        external_order_id: str,
        *,
        provider_order_id: str | None,
        redirect_target: str | None = None,
    ) -> Order: ...

    def merge_payload(self, external_order_id: str, extra: dict[str, Any]) -> Order: ...

    def list_pending(self, created_before: datetime) -> list[Order]: ...

    def count_by_status(self) -> dict[str, int]: ...

    def record_webhook(
        self,
        *,
        provider: str,
        event_id: str | None,
        event_type: str | None,
        verification_status: str,
        payload: dict[str, Any],
        external_order_id: str | None = None,
        orphan: bool = False,
    ) -> bool: ...

    def webhook_processed(self, provider: str, event_id: str) -> bool: ...


class SubscriptionStore(Protocol):
    def find_active(self, user_id: str) -> Subscription | None: ...

    def has_any(self, user_id: str) -> bool: ...

    def insert(self, subscription: Subscription) -> Subscription: ...

    def find_by_provider_subscription_id(self, provider_subscription_id: str) -> Subscription | None: ...

    def get(self, subscription_id: int) -> Subscription | None: ...

    def find_latest(self, user_id: str) -> Subscription | None: ...

    def update(self, subscription: Subscription) -> Subscription: ...
