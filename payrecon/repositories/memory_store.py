from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from payrecon.domain.models import Order, Subscription
from payrecon.domain.statuses import OrderStatus, SubscriptionStatus
from payrecon.errors import DuplicateKey, OrderNotFound, PersistenceError
from payrecon.utils.clock import Clock, SystemClock

from .base import StaleState


class InMemoryOrderStore:
    """Simple in-memory order repository.

    The lock stands in for the database's single-statement atomicity; callers
    always receive copies.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self.by_external_id: Dict[str, Order] = {}
        self.by_provider_id: Dict[tuple[str, str], str] = {}
        self.webhooks: Dict[tuple[str, str], Dict[str, Any]] = {}
        self.orphans: list[Dict[str, Any]] = []
        self._next_id = 1

    def _index(self, order: Order) -> None:
        if order.provider_order_id:
            self.by_provider_id[(order.provider.value, order.provider_order_id)] = order.external_order_id

    def find_by_external_id(self, external_order_id: str) -> Optional[Order]:
        with self._lock:
            order = self.by_external_id.get(external_order_id)
            return replace(order) if order else None

    def find_by_provider_id(self, provider: str, provider_order_id: str) -> Optional[Order]:
        with self._lock:
            external_id = self.by_provider_id.get((provider, provider_order_id))
            order = self.by_external_id.get(external_id) if external_id else None
            return replace(order) if order else None

    def insert(self, order: Order) -> Order:
        with self._lock:
            if order.external_order_id in self.by_external_id:
                raise DuplicateKey(f"order {order.external_order_id} already exists")
            now = self.clock.now()
            stored = replace(order, id=self._next_id, created_at=order.created_at or now, updated_at=now)
            self._next_id += 1
            self.by_external_id[stored.external_order_id] = stored
            self._index(stored)
            return replace(stored)

    def update_status(
        self,
        external_order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        *,
        extra: dict[str, Any] | None = None,
        provider_order_id: str | None = None,
    ) -> Order | StaleState:
        with self._lock:
            order = self.by_external_id.get(external_order_id)
            if order is None:
                raise OrderNotFound(external_order_id)
            if order.status is not expected:
                return StaleState(current=order.status)
            payload = dict(order.raw_provider_payload)
            if extra:
                payload.update(extra)
            updated = replace(
                order,
                status=new,
                raw_provider_payload=payload,
                provider_order_id=order.provider_order_id or provider_order_id,
                updated_at=self.clock.now(),
            )
            self.by_external_id[external_order_id] = updated
            self._index(updated)
            return replace(updated)

    def update_provider_reference(
        self,
        external_order_id: str,
        *,
        provider_order_id: str | None,
        redirect_target: str | None = None,
    ) -> Order:
        with self._lock:
            order = self.by_external_id.get(external_order_id)
            if order is None:
                raise OrderNotFound(external_order_id)
            updated = replace(
                order,
                provider_order_id=order.provider_order_id or provider_order_id,
                redirect_target=redirect_target or order.redirect_target,
                updated_at=self.clock.now(),
            )
            self.by_external_id[external_order_id] = updated
            self._index(updated)
            return replace(updated)

    def merge_payload(self, external_order_id: str, extra: dict[str, Any]) -> Order:
        with self._lock:
            order = self.by_external_id.get(external_order_id)
            if order is None:
                raise OrderNotFound(external_order_id)
            updated = replace(
                order,
                raw_provider_payload={**order.raw_provider_payload, **extra},
                updated_at=self.clock.now(),
            )
            self.by_external_id[external_order_id] = updated
            return replace(updated)

    def list_pending(self, created_before: datetime) -> list[Order]:
        with self._lock:
            return [
                replace(o)
                for o in self.by_external_id.values()
                if o.status is OrderStatus.PENDING and o.created_at and o.created_at < created_before
            ]

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for order in self.by_external_id.values():
                counts[order.status.value] = counts.get(order.status.value, 0) + 1
        return counts

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
    ) -> bool:
        entry = {
            "provider": provider,
            "event_id": event_id,
            "event_type": event_type,
            "verification_status": verification_status,
            "payload": payload,
            "external_order_id": external_order_id,
            "orphan": orphan,
        }
        with self._lock:
            if orphan:
                self.orphans.append(entry)
            if event_id is None:
                return True
            key = (provider, event_id)
            if key in self.webhooks:
                return False
            self.webhooks[key] = entry
            return True

    def webhook_processed(self, provider: str, event_id: str) -> bool:
        with self._lock:
            return (provider, event_id) in self.webhooks


class InMemorySubscriptionStore:
    """In-memory subscriptions; at most one active row per user."""

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self.by_id: Dict[int, Subscription] = {}
        self._next_id = 1

    def _active_for(self, user_id: str) -> Optional[Subscription]:
        for sub in self.by_id.values():
            if sub.user_id == user_id and sub.status is SubscriptionStatus.ACTIVE:
                return sub
        return None

    def find_active(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            sub = self._active_for(user_id)
            return replace(sub) if sub else None

    def has_any(self, user_id: str) -> bool:
        with self._lock:
            return any(sub.user_id == user_id for sub in self.by_id.values())

    def insert(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.status is SubscriptionStatus.ACTIVE and self._active_for(subscription.user_id):
                raise DuplicateKey(f"user {subscription.user_id} already has an active subscription")
            now = self.clock.now()
            stored = replace(subscription, id=self._next_id, created_at=now, updated_at=now)
            self._next_id += 1
            self.by_id[stored.id] = stored  # type: ignore[index]
            return replace(stored)

    def find_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            for sub in self.by_id.values():
                if sub.provider_subscription_id == provider_subscription_id:
                    return replace(sub)
        return None

    def get(self, subscription_id: int) -> Optional[Subscription]:
        with self._lock:
            sub = self.by_id.get(subscription_id)
            return replace(sub) if sub else None

    def find_latest(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            subs = [s for s in self.by_id.values() if s.user_id == user_id]
            return replace(max(subs, key=lambda s: s.id or 0)) if subs else None

    def update(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.id not in self.by_id:
                raise PersistenceError(f"subscription {subscription.id} does not exist")
            if subscription.status is SubscriptionStatus.ACTIVE:
                active = self._active_for(subscription.user_id)
                if active is not None and active.id != subscription.id:
                    raise DuplicateKey(f"user {subscription.user_id} already has an active subscription")
            stored = replace(subscription, updated_at=self.clock.now())
            self.by_id[stored.id] = stored  # type: ignore[index]
            return replace(stored)
