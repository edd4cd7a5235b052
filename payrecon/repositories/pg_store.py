from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import psycopg2
from psycopg2.errors import UniqueViolation
from psycopg2.extras import Json

from payrecon.db.client import get_conn
from payrecon.domain.enums import BillingCycle, Currency, ProviderName, ResponseShape
from payrecon.domain.models import Order, Subscription
from payrecon.domain.statuses import OrderStatus, SubscriptionStatus
from payrecon.errors import DuplicateKey, OrderNotFound, PersistenceError

from .base import StaleState

ORDER_COLUMNS = """
    id, external_order_id, provider, provider_order_id, user_id, amount, currency,
    plan_id, billing_cycle, status, response_shape, redirect_target, description,
    customer_email, customer_ip, customer_data, checkout_payload, raw_provider_payload,
    created_at, updated_at
"""

SUBSCRIPTION_COLUMNS = """
    id, user_id, plan_id, billing_cycle, status, current_period_start,
    current_period_end, provider, provider_subscription_id, trial_start, trial_end,
    payment_attempts, last_payment_order_id, last_invoice_id, amount, currency,
    canceled_at, created_at, updated_at
"""


def _hydrate_order(row: tuple[Any, ...]) -> Order:
    (
        pid,
        external_order_id,
        provider,
        provider_order_id,
        user_id,
        amount,
        currency,
        plan_id,
        billing_cycle,
        status,
        response_shape,
        redirect_target,
        description,
        customer_email,
        customer_ip,
        customer_data,
        checkout_payload,
        raw_provider_payload,
        created_at,
        updated_at,
    ) = row
    return Order(
        id=int(pid),
        external_order_id=str(external_order_id),
        provider=ProviderName(str(provider)),
        provider_order_id=str(provider_order_id) if provider_order_id else None,
        user_id=str(user_id),
        amount=int(amount),
        currency=Currency(str(currency)),
        plan_id=str(plan_id),
        billing_cycle=BillingCycle(str(billing_cycle)),
        status=OrderStatus(str(status)),
        response_shape=ResponseShape(str(response_shape)) if response_shape else None,
        redirect_target=redirect_target,
        description=description,
        customer_email=customer_email,
        customer_ip=customer_ip,
        customer_data=dict(customer_data or {}),
        checkout_payload=dict(checkout_payload or {}),
        raw_provider_payload=dict(raw_provider_payload or {}),
        created_at=created_at,
        updated_at=updated_at,
    )


def _hydrate_subscription(row: tuple[Any, ...]) -> Subscription:
    (
        sid,
        user_id,
        plan_id,
        billing_cycle,
        status,
        period_start,
        period_end,
        provider,
        provider_subscription_id,
        trial_start,
        trial_end,
        payment_attempts,
        last_payment_order_id,
        last_invoice_id,
        amount,
        currency,
        canceled_at,
        created_at,
        updated_at,
    ) = row
    return Subscription(
        id=int(sid),
        user_id=str(user_id),
        plan_id=str(plan_id),
        billing_cycle=BillingCycle(str(billing_cycle)),
        status=SubscriptionStatus(str(status)),
        current_period_start=period_start,
        current_period_end=period_end,
        provider=ProviderName(str(provider)) if provider else None,
        provider_subscription_id=provider_subscription_id,
        trial_start=trial_start,
        trial_end=trial_end,
        payment_attempts=int(payment_attempts or 0),
        last_payment_order_id=last_payment_order_id,
        last_invoice_id=last_invoice_id,
        amount=int(amount) if amount is not None else None,
        currency=Currency(str(currency)) if currency else None,
        canceled_at=canceled_at,
        created_at=created_at,
        updated_at=updated_at,
    )


class PgOrderStore:
    """PostgreSQL-backed order store using raw psycopg2.

    Expects ``payment_orders`` (unique ``external_order_id`` and
    ``(provider, provider_order_id)``) and ``webhook_inbox`` (unique
    ``(provider, event_id)``).
    """

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> Optional[Order]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return _hydrate_order(row) if row else None

    def find_by_external_id(self, external_order_id: str) -> Optional[Order]:
        return self._fetch_one(
            f"SELECT {ORDER_COLUMNS} FROM payment_orders WHERE external_order_id = %s",
            (external_order_id,),
        )

    def find_by_provider_id(self, provider: str, provider_order_id: str) -> Optional[Order]:
        return self._fetch_one(
            f"SELECT {ORDER_COLUMNS} FROM payment_orders WHERE provider = %s AND provider_order_id = %s",
            (provider, provider_order_id),
        )

    def insert(self, order: Order) -> Order:
        try:
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO payment_orders (
                            external_order_id, provider, provider_order_id, user_id, amount,
                            currency, plan_id, billing_cycle, status, response_shape,
                            redirect_target, description, customer_email, customer_ip, customer_data,
                            checkout_payload, raw_provider_payload, created_at, updated_at
                        ) VALUES (
                            %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s,
                            %s, %s, NOW(), NOW()
                        )
                        RETURNING {ORDER_COLUMNS}
                        """,
                        (
                            order.external_order_id,
                            order.provider.value,
                            order.provider_order_id,
                            order.user_id,
                            order.amount,
                            order.currency.value,
                            order.plan_id,
                            order.billing_cycle.value,
                            order.status.value,
                            order.response_shape.value if order.response_shape else None,
                            order.redirect_target,
                            order.description,
                            order.customer_email,
                            order.customer_ip,
                            Json(order.customer_data or {}),
                            Json(order.checkout_payload or {}),
                            Json(order.raw_provider_payload or {}),
                        ),
                    )
                    return _hydrate_order(cur.fetchone())
        except UniqueViolation as exc:
            raise DuplicateKey(f"order {order.external_order_id} already exists") from exc
        except psycopg2.IntegrityError as exc:
            raise PersistenceError(str(exc)) from exc

    def update_status(
        self,
        external_order_id: str,
        expected: OrderStatus,
        new: OrderStatus,
        *,
        extra: dict[str, Any] | None = None,
        provider_order_id: str | None = None,
    ) -> Order | StaleState:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE payment_orders
                       SET status = %s,
                           raw_provider_payload = raw_provider_payload || %s,
                           provider_order_id = COALESCE(provider_order_id, %s),
                           updated_at = NOW()
                     WHERE external_order_id = %s AND status = %s
                     RETURNING {ORDER_COLUMNS}
                    """,
                    (new.value, Json(extra or {}), provider_order_id, external_order_id, expected.value),
                )
                row = cur.fetchone()
                if row:
                    return _hydrate_order(row)
                cur.execute(
                    "SELECT status FROM payment_orders WHERE external_order_id = %s",
                    (external_order_id,),
                )
                current = cur.fetchone()
        if current is None:
            raise OrderNotFound(external_order_id)
        return StaleState(current=OrderStatus(str(current[0])))

    def update_provider_reference(
        self,
        external_order_id: str,
        *,
        provider_order_id: str | None,
        redirect_target: str | None = None,
    ) -> Order:
        order = self._fetch_one(
            f"""
            UPDATE payment_orders
               SET provider_order_id = COALESCE(provider_order_id, %s),
                   redirect_target = COALESCE(%s, redirect_target),
                   updated_at = NOW()
             WHERE external_order_id = %s
             RETURNING {ORDER_COLUMNS}
            """,
            (provider_order_id, redirect_target, external_order_id),
        )
        if order is None:
            raise OrderNotFound(external_order_id)
        return order

    def merge_payload(self, external_order_id: str, extra: dict[str, Any]) -> Order:
        order = self._fetch_one(
            f"""
            UPDATE payment_orders
               SET raw_provider_payload = raw_provider_payload || %s,
                   updated_at = NOW()
             WHERE external_order_id = %s
             RETURNING {ORDER_COLUMNS}
            """,
            (Json(extra), external_order_id),
        )
        if order is None:
            raise OrderNotFound(external_order_id)
        return order

    def list_pending(self, created_before: datetime) -> list[Order]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {ORDER_COLUMNS}
                      FROM payment_orders
                     WHERE status = 'PENDING' AND created_at < %s
                     ORDER BY created_at
                     LIMIT 200
                    """,
                    (created_before,),
                )
                return [_hydrate_order(row) for row in cur.fetchall() or []]

    def count_by_status(self) -> dict[str, int]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT status, COUNT(*) FROM payment_orders GROUP BY status")
                return {str(status): int(count) for status, count in cur.fetchall() or []}

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
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_inbox (
                        provider, event_id, event_type, verification_status, payload,
                        external_order_id, orphan, received_at
                    ) VALUES (
                        %s, %s, %s, %s, %s, %s, %s, NOW()
                    ) ON CONFLICT (provider, event_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        provider,
                        event_id,
                        event_type,
                        verification_status,
                        Json(payload or {}),
                        external_order_id,
                        orphan,
                    ),
                )
                return cur.fetchone() is not None

    def webhook_processed(self, provider: str, event_id: str) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM webhook_inbox WHERE provider = %s AND event_id = %s LIMIT 1",
                    (provider, event_id),
                )
                return cur.fetchone() is not None


class PgSubscriptionStore:
    """PostgreSQL store for ``user_subscriptions``.

    One active row per user is enforced by a partial unique index
    ``ON user_subscriptions (user_id) WHERE status = 'active'``.
    """

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> Optional[Subscription]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return _hydrate_subscription(row) if row else None

    def find_active(self, user_id: str) -> Optional[Subscription]:
        return self._fetch_one(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM user_subscriptions WHERE user_id = %s AND status = 'active' LIMIT 1",
            (user_id,),
        )

    def has_any(self, user_id: str) -> bool:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM user_subscriptions WHERE user_id = %s LIMIT 1", (user_id,))
                return cur.fetchone() is not None

    def find_by_provider_subscription_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        return self._fetch_one(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM user_subscriptions WHERE provider_subscription_id = %s",
            (provider_subscription_id,),
        )

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self._fetch_one(
            f"SELECT {SUBSCRIPTION_COLUMNS} FROM user_subscriptions WHERE id = %s",
            (subscription_id,),
        )

    def find_latest(self, user_id: str) -> Optional[Subscription]:
        return self._fetch_one(
            f"""
            SELECT {SUBSCRIPTION_COLUMNS}
              FROM user_subscriptions
             WHERE user_id = %s
             ORDER BY created_at DESC, id DESC
             LIMIT 1
            """,
            (user_id,),
        )

    def _values(self, sub: Subscription) -> tuple[Any, ...]:
        return (
            sub.plan_id,
            sub.billing_cycle.value,
            sub.status.value,
            sub.current_period_start,
            sub.current_period_end,
            sub.provider.value if sub.provider else None,
            sub.provider_subscription_id,
            sub.trial_start,
            sub.trial_end,
            sub.payment_attempts,
            sub.last_payment_order_id,
            sub.last_invoice_id,
            sub.amount,
            sub.currency.value if sub.currency else None,
            sub.canceled_at,
        )

    def insert(self, subscription: Subscription) -> Subscription:
        try:
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO user_subscriptions (
                            plan_id, billing_cycle, status, current_period_start,
                            current_period_end, provider, provider_subscription_id,
                            trial_start, trial_end, payment_attempts, last_payment_order_id,
                            last_invoice_id, amount, currency, canceled_at,
                            user_id, created_at, updated_at
                        ) VALUES (
                            %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s, %s, NOW(), NOW()
                        )
                        RETURNING {SUBSCRIPTION_COLUMNS}
                        """,
                        self._values(subscription) + (subscription.user_id,),
                    )
                    return _hydrate_subscription(cur.fetchone())
        except UniqueViolation as exc:
            raise DuplicateKey(f"user {subscription.user_id} already has an active subscription") from exc
        except psycopg2.IntegrityError as exc:
            raise PersistenceError(str(exc)) from exc

    def update(self, subscription: Subscription) -> Subscription:
        try:
            updated = self._fetch_one(
                f"""
                UPDATE user_subscriptions
                   SET plan_id = %s, billing_cycle = %s, status = %s,
                       current_period_start = %s, current_period_end = %s,
                       provider = %s, provider_subscription_id = %s,
                       trial_start = %s, trial_end = %s, payment_attempts = %s,
                       last_payment_order_id = %s, last_invoice_id = %s,
                       amount = %s, currency = %s, canceled_at = %s,
                       updated_at = NOW()
                 WHERE id = %s
                 RETURNING {SUBSCRIPTION_COLUMNS}
                """,
                self._values(subscription) + (subscription.id,),
            )
        except UniqueViolation as exc:
            raise DuplicateKey(f"user {subscription.user_id} already has an active subscription") from exc
        except psycopg2.IntegrityError as exc:
            raise PersistenceError(str(exc)) from exc
        if updated is None:
            raise PersistenceError(f"subscription {subscription.id} does not exist")
        return updated
