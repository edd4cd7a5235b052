from __future__ import annotations

import calendar
import logging
from dataclasses import replace
from datetime import datetime, timedelta

from payrecon.domain.enums import BillingCycle
from payrecon.domain.models import Order, Subscription
from payrecon.domain.statuses import SubscriptionStatus
from payrecon.errors import DuplicateKey
from payrecon.repositories.base import SubscriptionStore
from payrecon.utils.clock import Clock

logger = logging.getLogger(__name__)

# Stripe subscription.status values; anything missing leaves the row as is
STRIPE_SUBSCRIPTION_STATUSES = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.FAILED,
}


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def advance_period(start: datetime, billing_cycle: BillingCycle) -> datetime:
    return add_months(start, billing_cycle.months)


class SubscriptionLifecycleManager:
    """Creates, renews, degrades and cancels user subscriptions."""

    def __init__(
        self,
        store: SubscriptionStore,
        clock: Clock,
        *,
        trial_days: int = 14,
        failure_threshold: int = 3,
    ):
        self.store = store
        self.clock = clock
        self.trial_days = trial_days
        self.failure_threshold = failure_threshold

    def activate(self, order: Order, *, provider_subscription_id: str | None = None) -> Subscription:
        """Give the order's user a subscription unless one is already active.

        A DuplicateKey from the store means a concurrent completion won; the
        winner's row is returned.
        """
        existing = self.store.find_active(order.user_id)
        if existing is not None:
            logger.info(
                "active subscription already present",
                extra={
                    "user_id": order.user_id,
                    "subscription_id": existing.id,
                    "external_order_id": order.external_order_id,
                },
            )
            return existing

        now = self.clock.now()
        first_ever = not self.store.has_any(order.user_id)
        subscription = Subscription(
            user_id=order.user_id,
            plan_id=order.plan_id,
            billing_cycle=order.billing_cycle,
            current_period_start=now,
            current_period_end=advance_period(now, order.billing_cycle),
            status=SubscriptionStatus.ACTIVE,
            provider=order.provider,
            provider_subscription_id=provider_subscription_id,
            trial_start=now if first_ever else None,
            trial_end=now + timedelta(days=self.trial_days) if first_ever else None,
            last_payment_order_id=order.external_order_id,
            amount=order.amount,
            currency=order.currency,
        )
        try:
            created = self.store.insert(subscription)
        except DuplicateKey:
            winner = self.store.find_active(order.user_id)
            logger.info(
                "subscription created concurrently",
                extra={"user_id": order.user_id, "external_order_id": order.external_order_id},
            )
            if winner is None:
                raise
            return winner
        logger.info(
            "subscription activated",
            extra={
                "user_id": created.user_id,
                "subscription_id": created.id,
                "external_order_id": order.external_order_id,
                "event": "trial" if first_ever else "paid",
            },
        )
        return created

    def renew(
        self,
        subscription: Subscription,
        invoice_id: str | None = None,
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> Subscription:
        """Record a paid renewal.

        A provider-supplied period is taken as is, but only when it ends later
        than the current one. Without it the period advances by one cycle.
        """
        if invoice_id and subscription.last_invoice_id == invoice_id:
            logger.info(
                "renewal already applied",
                extra={"subscription_id": subscription.id, "event": invoice_id},
            )
            return subscription
        if period_end is None:
            period_start = subscription.current_period_end
            period_end = advance_period(period_start, subscription.billing_cycle)
        elif period_end <= subscription.current_period_end:
            period_start, period_end = subscription.current_period_start, subscription.current_period_end
        renewed = replace(
            subscription,
            current_period_start=period_start or subscription.current_period_start,
            current_period_end=period_end,
            payment_attempts=0,
            status=SubscriptionStatus.ACTIVE,
            last_invoice_id=invoice_id or subscription.last_invoice_id,
        )
        saved = self.store.update(renewed)
        logger.info(
            "subscription renewed",
            extra={"subscription_id": saved.id, "user_id": saved.user_id, "status": saved.status},
        )
        return saved

    def record_payment_failure(self, subscription: Subscription) -> Subscription:
        attempts = subscription.payment_attempts + 1
        status = subscription.status
        if attempts >= self.failure_threshold and status is SubscriptionStatus.ACTIVE:
            status = SubscriptionStatus.PAST_DUE
        saved = self.store.update(replace(subscription, payment_attempts=attempts, status=status))
        logger.warning(
            "subscription payment failed",
            extra={
                "subscription_id": saved.id,
                "user_id": saved.user_id,
                "attempt": attempts,
                "status": saved.status,
            },
        )
        return saved

    def cancel(self, subscription: Subscription) -> Subscription:
        if subscription.status is SubscriptionStatus.CANCELED:
            return subscription
        saved = self.store.update(
            replace(subscription, status=SubscriptionStatus.CANCELED, canceled_at=self.clock.now())
        )
        logger.info(
            "subscription canceled",
            extra={"subscription_id": saved.id, "user_id": saved.user_id},
        )
        return saved

    def sync_provider_status(
        self,
        subscription: Subscription,
        provider_status: str,
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> Subscription:
        status = STRIPE_SUBSCRIPTION_STATUSES.get(provider_status)
        if status is SubscriptionStatus.CANCELED:
            return self.cancel(subscription)
        if period_end is None or period_end <= subscription.current_period_end:
            # Periods only move forward
            period_start = period_end = None
        updated = replace(
            subscription,
            status=status or subscription.status,
            current_period_start=period_start or subscription.current_period_start,
            current_period_end=period_end or subscription.current_period_end,
        )
        if updated == subscription:
            return subscription
        saved = self.store.update(updated)
        logger.info(
            "subscription synced",
            extra={"subscription_id": saved.id, "status": saved.status, "event": provider_status},
        )
        return saved
