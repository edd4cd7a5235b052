from __future__ import annotations

import asyncio
import pathlib
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from conftest import NOW, FakeGateway, FrozenClock
from payrecon.config import Settings
from payrecon.domain.dtos import CheckoutRequest, CustomerAddress, CustomerData
from payrecon.domain.enums import BillingCycle, EventSource, ProviderName, ResponseShape
from payrecon.domain.models import AuthenticatedUser, PaymentEvent
from payrecon.domain.statuses import OrderStatus, SubscriptionStatus
from payrecon.errors import (
    ActiveSubscriptionExists,
    OrderLookupConflict,
    OrderNotFound,
    PersistenceError,
    TransientGatewayError,
    ValidationError,
)
from payrecon.providers.base import GatewayOrderResult
from payrecon.repositories.base import StaleState
from payrecon.repositories.memory_store import InMemoryOrderStore, InMemorySubscriptionStore
from payrecon.services.reconciliation import ReconciliationEngine, ReconcileResult
from payrecon.services.transitions import TransitionVerdict

USER = AuthenticatedUser(user_id="u1", email="jan@example.com")


def checkout_request(**overrides: Any) -> CheckoutRequest:
    values: dict[str, Any] = dict(
        plan_id="basic",
        billing_cycle=BillingCycle.MONTHLY,
        amount=79900,
        customer_data=CustomerData(email="jan@example.com", first_name="Jan"),
    )
    values.update(overrides)
    return CheckoutRequest(**values)


def payu_event(status: str, *, ext: str | None = None, provider_id: str | None = None, **kwargs: Any) -> PaymentEvent:
    return PaymentEvent(
        provider=ProviderName.PAYU,
        provider_status=status,
        provider_order_id=provider_id,
        external_order_id=ext,
        event_id=f"{provider_id}:{status}" if provider_id else None,
        **kwargs,
    )


def start(engine: ReconciliationEngine, **overrides: Any):  # type: ignore[no-untyped-def]
    return asyncio.run(engine.start_checkout(USER, checkout_request(**overrides)))


# Checkout


def test_checkout_creates_pending_order(engine: ReconciliationEngine, payu: FakeGateway) -> None:
    result = start(engine)
    order = result.order
    assert order.status is OrderStatus.PENDING
    assert order.external_order_id.startswith("basic-u1-")
    assert order.provider_order_id == "PAYU-1"
    assert result.redirect_uri == "https://secure.snd.payu.com/pay/?orderId=PAYU-1"
    assert result.outcome is ResponseShape.JSON_ORDER

    sent = payu.requests[0]
    assert sent.amount == 79900
    assert sent.description == "Plan Podstawowy - abonament miesięczny - Monitor Wizaro"
    assert sent.line_items[0].unit_price == 79900


def test_checkout_uses_requested_provider(
    engine: ReconciliationEngine, payu: FakeGateway, stripe_gateway: FakeGateway
) -> None:
    result = start(engine, provider=ProviderName.STRIPE)
    assert result.order.provider is ProviderName.STRIPE
    assert len(stripe_gateway.requests) == 1
    assert payu.requests == []


def test_checkout_rejected_with_active_subscription(engine: ReconciliationEngine, payu: FakeGateway) -> None:
    order = start(engine).order
    engine.apply_event(payu_event("COMPLETED", ext=order.external_order_id, provider_id=order.provider_order_id))
    with pytest.raises(ActiveSubscriptionExists):
        start(engine)
    assert len(payu.requests) == 1


def test_checkout_validation_error_is_not_retried(engine: ReconciliationEngine, payu: FakeGateway) -> None:
    with pytest.raises(ValidationError):
        start(engine, amount=50)
    assert payu.requests == []


def test_checkout_retries_transient_errors(
    orders: InMemoryOrderStore,
    subscriptions: InMemorySubscriptionStore,
    payu: FakeGateway,
    clock: FrozenClock,
    cfg: Settings,
) -> None:
    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    engine = ReconciliationEngine(orders, subscriptions, {ProviderName.PAYU: payu}, clock=clock, cfg=cfg, sleep=record_sleep)
    payu.results = [TransientGatewayError("503"), TransientGatewayError("timeout")]
    result = start(engine)
    assert result.order.provider_order_id == "PAYU-3"
    assert delays == [0.5, 1.0]


def test_checkout_retry_sends_fresh_external_order_id(
    engine: ReconciliationEngine, payu: FakeGateway, orders: InMemoryOrderStore
) -> None:
    payu.results = [TransientGatewayError("timeout")]
    result = start(engine)
    first, second = payu.requests
    assert first.external_order_id != second.external_order_id
    assert result.order.external_order_id == second.external_order_id
    assert list(orders.by_external_id) == [second.external_order_id]


def test_checkout_falls_back_to_company_name(engine: ReconciliationEngine, payu: FakeGateway) -> None:
    customer = CustomerData(
        email="biuro@example.com",
        company_name="Wizaro Sp. z o.o.",
        address=CustomerAddress(street="Prosta", building_number="7", city="Warszawa", zip_code="00-838"),
    )
    order = start(engine, customer_data=customer).order
    assert payu.requests[0].customer_first_name == "Wizaro Sp. z o.o."
    assert order.customer_data["companyName"] == "Wizaro Sp. z o.o."
    assert order.customer_data["address"]["zipCode"] == "00-838"
    assert "firstName" not in order.customer_data


def test_checkout_gives_up_after_max_attempts(
    engine: ReconciliationEngine, payu: FakeGateway, orders: InMemoryOrderStore
) -> None:
    payu.results = [TransientGatewayError("503") for _ in range(3)]
    with pytest.raises(TransientGatewayError):
        start(engine)
    assert len(payu.requests) == 3
    assert orders.by_external_id == {}


def test_html_answer_redirects_to_payment_page(
    engine: ReconciliationEngine, payu: FakeGateway, orders: InMemoryOrderStore
) -> None:
    payu.results = [
        GatewayOrderResult(outcome_kind=ResponseShape.HTML_PAGE, raw_body="<html>PayU</html>", status_code=200)
    ]
    result = start(engine)
    ext = result.order.external_order_id
    assert result.outcome is ResponseShape.HTML_PAGE
    assert result.redirect_uri == f"https://billing.example.com/api/payu/payment-page/{ext}"
    assert result.order.provider_order_id is None

    payu.results = [
        GatewayOrderResult(
            outcome_kind=ResponseShape.REDIRECT,
            provider_order_id="ORD9",
            redirect_target="https://secure.snd.payu.com/pay/?orderId=ORD9",
            status_code=302,
        )
    ]
    replayed = asyncio.run(engine.open_payment_page(USER, ext, customer_ip="10.1.1.1"))
    assert replayed.redirect_target == "https://secure.snd.payu.com/pay/?orderId=ORD9"
    assert payu.requests[-1].external_order_id == ext
    assert payu.requests[-1].customer_ip == "10.1.1.1"
    stored = orders.find_by_external_id(ext)
    assert stored is not None
    assert stored.provider_order_id == "ORD9"
    assert stored.redirect_target == "https://secure.snd.payu.com/pay/?orderId=ORD9"


def test_payment_page_is_owner_only(engine: ReconciliationEngine) -> None:
    ext = start(engine).order.external_order_id
    with pytest.raises(OrderNotFound):
        asyncio.run(engine.open_payment_page(AuthenticatedUser(user_id="u2"), ext))


# Inbound events


def test_completed_webhook_activates_trial_subscription(
    engine: ReconciliationEngine, orders: InMemoryOrderStore
) -> None:
    order = start(engine).order
    event = payu_event(
        "COMPLETED",
        ext=order.external_order_id,
        provider_id="PAYU-1",
        total_amount=79900,
        currency="PLN",
    )
    outcome = engine.apply_event(event)

    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.status is OrderStatus.COMPLETED
    sub = outcome.subscription
    assert sub is not None
    assert sub.status is SubscriptionStatus.ACTIVE
    assert sub.trial_end == NOW + timedelta(days=14)
    assert sub.current_period_end == datetime(2024, 2, 15, 12, 0, tzinfo=timezone.utc)
    assert ("payu", "PAYU-1:COMPLETED") in orders.webhooks


def test_redelivery_is_duplicate_and_creates_no_second_subscription(
    engine: ReconciliationEngine, subscriptions: InMemorySubscriptionStore
) -> None:
    order = start(engine).order
    event = payu_event("COMPLETED", ext=order.external_order_id, provider_id="PAYU-1")
    first = engine.apply_event(event)
    second = engine.apply_event(event)
    assert second.result is ReconcileResult.DUPLICATE
    assert second.subscription is not None
    assert second.subscription.id == first.subscription.id  # type: ignore[union-attr]
    assert len(subscriptions.by_id) == 1


def test_duplicate_completion_restores_missing_subscription(
    engine: ReconciliationEngine, subscriptions: InMemorySubscriptionStore, orders: InMemoryOrderStore
) -> None:
    order = start(engine).order
    orders.update_status(order.external_order_id, OrderStatus.PENDING, OrderStatus.COMPLETED)
    outcome = engine.apply_event(payu_event("COMPLETED", ext=order.external_order_id, provider_id="PAYU-1"))
    assert outcome.result is ReconcileResult.DUPLICATE
    assert outcome.subscription is not None
    assert len(subscriptions.by_id) == 1


def test_redelivered_completion_does_not_revive_canceled_subscription(
    engine: ReconciliationEngine, subscriptions: InMemorySubscriptionStore, orders: InMemoryOrderStore
) -> None:
    first = start(engine).order
    second = start(engine).order
    activated = engine.apply_event(payu_event("COMPLETED", ext=first.external_order_id, provider_id="PAYU-1"))
    joined = engine.apply_event(payu_event("COMPLETED", ext=second.external_order_id, provider_id="PAYU-2"))
    assert joined.result is ReconcileResult.APPLIED
    assert joined.subscription.id == activated.subscription.id  # type: ignore[union-attr]
    stored = orders.find_by_external_id(second.external_order_id)
    assert stored.raw_provider_payload["subscription_id"] == activated.subscription.id  # type: ignore[union-attr]

    engine.lifecycle.cancel(activated.subscription)  # type: ignore[arg-type]
    again = engine.apply_event(payu_event("COMPLETED", ext=second.external_order_id, provider_id="PAYU-2"))
    assert again.result is ReconcileResult.DUPLICATE
    assert again.subscription.status is SubscriptionStatus.CANCELED  # type: ignore[union-attr]
    assert subscriptions.find_active("u1") is None
    assert len(subscriptions.by_id) == 1


def test_late_cancel_after_completion_is_ignored(engine: ReconciliationEngine) -> None:
    order = start(engine).order
    engine.apply_event(payu_event("COMPLETED", ext=order.external_order_id, provider_id="PAYU-1"))
    outcome = engine.apply_event(payu_event("CANCELED", ext=order.external_order_id, provider_id="PAYU-1"))
    assert outcome.result is ReconcileResult.IGNORED
    assert outcome.decision is not None
    assert outcome.decision.verdict is TransitionVerdict.OUT_OF_ORDER
    assert outcome.status is OrderStatus.COMPLETED


def test_failed_order_stays_failed(engine: ReconciliationEngine, subscriptions: InMemorySubscriptionStore) -> None:
    order = start(engine).order
    assert engine.apply_event(payu_event("REJECTED", ext=order.external_order_id)).status is OrderStatus.FAILED
    outcome = engine.apply_event(payu_event("COMPLETED", ext=order.external_order_id))
    assert outcome.result is ReconcileResult.IGNORED
    assert outcome.decision.verdict is TransitionVerdict.LOCKED  # type: ignore[union-attr]
    assert subscriptions.by_id == {}


def test_pending_report_changes_nothing(engine: ReconciliationEngine) -> None:
    order = start(engine).order
    outcome = engine.apply_event(payu_event("WAITING_FOR_CONFIRMATION", ext=order.external_order_id))
    assert outcome.result is ReconcileResult.NO_CHANGE
    assert outcome.status is OrderStatus.PENDING


def test_lookup_by_provider_id_only(engine: ReconciliationEngine) -> None:
    start(engine)
    outcome = engine.apply_event(payu_event("COMPLETED", provider_id="PAYU-1"))
    assert outcome.result is ReconcileResult.APPLIED


def test_unknown_order_is_recorded_as_orphan(engine: ReconciliationEngine, orders: InMemoryOrderStore) -> None:
    outcome = engine.apply_event(payu_event("COMPLETED", ext="basic-nobody-1", provider_id="ZZZ"))
    assert outcome.result is ReconcileResult.ORPHAN
    assert outcome.order is None
    assert len(orders.orphans) == 1
    assert orders.orphans[0]["external_order_id"] == "basic-nobody-1"


def test_conflicting_identifiers_raise(engine: ReconciliationEngine) -> None:
    first = start(engine).order
    second = start(engine).order
    assert first.external_order_id != second.external_order_id
    with pytest.raises(OrderLookupConflict):
        engine.apply_event(payu_event("COMPLETED", ext=first.external_order_id, provider_id=second.provider_order_id))


def test_unknown_provider_status(engine: ReconciliationEngine) -> None:
    order = start(engine).order
    outcome = engine.apply_event(payu_event("SOMETHING_NEW", ext=order.external_order_id))
    assert outcome.result is ReconcileResult.UNKNOWN_STATUS
    assert outcome.status is OrderStatus.PENDING


def test_lost_compare_and_set_reports_stale(
    engine: ReconciliationEngine,
    orders: InMemoryOrderStore,
    subscriptions: InMemorySubscriptionStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    order = start(engine).order
    monkeypatch.setattr(orders, "update_status", lambda *args, **kwargs: StaleState(current=OrderStatus.CANCELED))
    outcome = engine.apply_event(payu_event("COMPLETED", ext=order.external_order_id))
    assert outcome.result is ReconcileResult.STALE
    assert outcome.status is OrderStatus.CANCELED
    assert subscriptions.by_id == {}


def test_concurrent_completions_yield_one_active_subscription(
    engine: ReconciliationEngine, subscriptions: InMemorySubscriptionStore
) -> None:
    first = start(engine).order
    second = start(engine).order
    events = [
        payu_event("COMPLETED", ext=first.external_order_id, provider_id=first.provider_order_id),
        payu_event("COMPLETED", ext=first.external_order_id, provider_id=first.provider_order_id),
        payu_event("COMPLETED", ext=second.external_order_id, provider_id=second.provider_order_id),
        payu_event("COMPLETED", ext=second.external_order_id, provider_id=second.provider_order_id),
    ]
    barrier = threading.Barrier(len(events))
    outcomes: list = []
    errors: list[BaseException] = []

    def deliver(event: PaymentEvent) -> None:
        barrier.wait()
        try:
            outcomes.append(engine.apply_event(event))
        except BaseException as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=deliver, args=(event,)) for event in events]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    applied = [o for o in outcomes if o.result is ReconcileResult.APPLIED]
    assert len(applied) == 2
    assert {o.result for o in outcomes} <= {ReconcileResult.APPLIED, ReconcileResult.DUPLICATE, ReconcileResult.STALE}
    active = [s for s in subscriptions.by_id.values() if s.status is SubscriptionStatus.ACTIVE]
    assert len(active) == 1


# Drift correction


def test_poll_matches_webhook_path(engine: ReconciliationEngine, payu: FakeGateway, orders: InMemoryOrderStore) -> None:
    order = start(engine).order
    payu.statuses[order.external_order_id] = "COMPLETED"
    outcome = asyncio.run(engine.poll_order(order.external_order_id))
    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.subscription is not None
    assert payu.status_calls == [("PAYU-1", order.external_order_id)]
    assert orders.webhooks == {}

    webhook = engine.apply_event(payu_event("COMPLETED", ext=order.external_order_id, provider_id="PAYU-1"))
    assert webhook.result is ReconcileResult.DUPLICATE


def test_poll_unknown_order(engine: ReconciliationEngine) -> None:
    with pytest.raises(OrderNotFound):
        asyncio.run(engine.poll_order("basic-u1-missing"))


def test_reconcile_pending_polls_only_stale_orders(
    engine: ReconciliationEngine, payu: FakeGateway, clock: FrozenClock
) -> None:
    done = start(engine).order
    flaky = start(engine).order
    clock.advance(minutes=31)
    fresh = start(engine).order
    payu.statuses[done.external_order_id] = "COMPLETED"
    payu.statuses[flaky.external_order_id] = TransientGatewayError("timeout")

    outcomes = asyncio.run(engine.reconcile_pending())

    assert [o.result for o in outcomes] == [ReconcileResult.APPLIED]
    assert outcomes[0].order.external_order_id == done.external_order_id  # type: ignore[union-attr]
    polled = {ext for _, ext in payu.status_calls}
    assert polled == {done.external_order_id, flaky.external_order_id}
    assert fresh.external_order_id not in polled


def test_reconcile_pending_continues_past_storage_failure(
    engine: ReconciliationEngine,
    payu: FakeGateway,
    orders: InMemoryOrderStore,
    clock: FrozenClock,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    first, broken, last = (start(engine).order for _ in range(3))
    clock.advance(minutes=31)
    payu.statuses[first.external_order_id] = "COMPLETED"
    payu.statuses[broken.external_order_id] = "COMPLETED"
    payu.statuses[last.external_order_id] = "CANCELED"
    update_status = orders.update_status

    def failing_update(external_order_id: str, *args: Any, **kwargs: Any):  # type: ignore[no-untyped-def]
        if external_order_id == broken.external_order_id:
            raise PersistenceError("connection reset")
        return update_status(external_order_id, *args, **kwargs)

    monkeypatch.setattr(orders, "update_status", failing_update)
    with caplog.at_level("ERROR"):
        outcomes = asyncio.run(engine.reconcile_pending())

    assert [o.order.external_order_id for o in outcomes] == [  # type: ignore[union-attr]
        first.external_order_id,
        last.external_order_id,
    ]
    assert [o.status for o in outcomes] == [OrderStatus.COMPLETED, OrderStatus.CANCELED]
    assert orders.find_by_external_id(broken.external_order_id).status is OrderStatus.PENDING  # type: ignore[union-attr]
    failures = [r for r in caplog.records if r.levelname == "ERROR"]
    assert [r.external_order_id for r in failures] == [broken.external_order_id]  # type: ignore[attr-defined]


# Stripe events


def stripe_event(event_id: str, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def epoch(*args: int) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def stripe_subscription(engine: ReconciliationEngine, stripe_gateway: FakeGateway):  # type: ignore[no-untyped-def]
    stripe_gateway.results = [
        GatewayOrderResult(
            outcome_kind=ResponseShape.JSON_ORDER,
            provider_order_id="cs_test_1",
            redirect_target="https://checkout.stripe.com/c/pay/cs_test_1",
        )
    ]
    order = start(engine, provider=ProviderName.STRIPE).order
    session = {
        "id": "cs_test_1",
        "status": "complete",
        "payment_status": "paid",
        "amount_total": 79900,
        "currency": "pln",
        "subscription": "sub_1",
        "metadata": {"ext_order_id": order.external_order_id},
    }
    outcome = engine.handle_stripe_event(stripe_event("evt_1", "checkout.session.completed", session))
    assert outcome.result is ReconcileResult.APPLIED
    return outcome.subscription


def test_session_completed_links_provider_subscription(stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    assert stripe_subscription.provider_subscription_id == "sub_1"
    assert stripe_subscription.provider is ProviderName.STRIPE


def test_expired_session_cancels_order(engine: ReconciliationEngine, stripe_gateway: FakeGateway) -> None:
    order = start(engine, provider=ProviderName.STRIPE).order
    session = {"id": order.provider_order_id, "status": "expired", "client_reference_id": order.external_order_id}
    outcome = engine.handle_stripe_event(stripe_event("evt_9", "checkout.session.expired", session))
    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.status is OrderStatus.CANCELED


def test_first_invoice_is_ignored(engine: ReconciliationEngine, stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    invoice = {"id": "in_1", "subscription": "sub_1", "billing_reason": "subscription_create"}
    outcome = engine.handle_stripe_event(stripe_event("evt_2", "invoice.paid", invoice))
    assert outcome.result is ReconcileResult.IGNORED
    assert outcome.subscription.current_period_end == stripe_subscription.current_period_end


def test_renewal_invoice_extends_period_once(engine: ReconciliationEngine, stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    invoice = {"id": "in_2", "subscription": "sub_1", "billing_reason": "subscription_cycle"}
    outcome = engine.handle_stripe_event(stripe_event("evt_3", "invoice.paid", invoice))
    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.subscription.current_period_start == datetime(2024, 2, 15, 12, tzinfo=timezone.utc)
    assert outcome.subscription.current_period_end == datetime(2024, 3, 15, 12, tzinfo=timezone.utc)

    redelivered = engine.handle_stripe_event(stripe_event("evt_3", "invoice.paid", invoice))
    assert redelivered.result is ReconcileResult.DUPLICATE
    same_invoice = engine.handle_stripe_event(stripe_event("evt_4", "invoice.payment_succeeded", invoice))
    assert same_invoice.result is ReconcileResult.DUPLICATE
    assert same_invoice.subscription.current_period_end == datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


def test_repeated_payment_failures_mark_past_due(
    engine: ReconciliationEngine, subscriptions: InMemorySubscriptionStore, stripe_subscription
) -> None:  # type: ignore[no-untyped-def]
    invoice = {"id": "in_3", "subscription": "sub_1", "billing_reason": "subscription_cycle"}
    results = [
        engine.handle_stripe_event(stripe_event(f"evt_fail_{n}", "invoice.payment_failed", invoice))
        for n in range(3)
    ]
    assert [r.subscription.payment_attempts for r in results] == [1, 2, 3]
    assert results[-1].subscription.status is SubscriptionStatus.PAST_DUE
    assert subscriptions.find_active("u1") is None


def test_subscription_deleted_cancels(engine: ReconciliationEngine, stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    outcome = engine.handle_stripe_event(
        stripe_event("evt_5", "customer.subscription.deleted", {"id": "sub_1", "status": "canceled"})
    )
    assert outcome.subscription.status is SubscriptionStatus.CANCELED
    assert outcome.subscription.canceled_at == NOW


def test_subscription_updated_syncs_period(engine: ReconciliationEngine, stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    obj = {
        "id": "sub_1",
        "status": "active",
        "items": {
            "data": [{"current_period_start": epoch(2024, 1, 20), "current_period_end": epoch(2024, 2, 20)}]
        },
    }
    outcome = engine.handle_stripe_event(stripe_event("evt_6", "customer.subscription.updated", obj))
    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.subscription.current_period_start == datetime(2024, 1, 20, tzinfo=timezone.utc)
    assert outcome.subscription.current_period_end == datetime(2024, 2, 20, tzinfo=timezone.utc)


def renewal_events() -> tuple[dict[str, Any], dict[str, Any]]:
    period = {"start": epoch(2024, 2, 15, 12), "end": epoch(2024, 3, 15, 12)}
    invoice = {
        "id": "in_2",
        "subscription": "sub_1",
        "billing_reason": "subscription_cycle",
        "lines": {"data": [{"period": period}]},
    }
    updated = {
        "id": "sub_1",
        "status": "active",
        "current_period_start": period["start"],
        "current_period_end": period["end"],
    }
    return (
        stripe_event("evt_paid", "invoice.paid", invoice),
        stripe_event("evt_updated", "customer.subscription.updated", updated),
    )


def test_subscription_update_then_invoice_renews_once(engine: ReconciliationEngine, stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    paid, updated = renewal_events()
    engine.handle_stripe_event(updated)
    outcome = engine.handle_stripe_event(paid)
    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.subscription.current_period_start == datetime(2024, 2, 15, 12, tzinfo=timezone.utc)
    assert outcome.subscription.current_period_end == datetime(2024, 3, 15, 12, tzinfo=timezone.utc)
    assert outcome.subscription.last_invoice_id == "in_2"


def test_invoice_then_subscription_update_renews_once(engine: ReconciliationEngine, stripe_subscription) -> None:  # type: ignore[no-untyped-def]
    paid, updated = renewal_events()
    engine.handle_stripe_event(paid)
    outcome = engine.handle_stripe_event(updated)
    assert outcome.result is ReconcileResult.APPLIED
    assert outcome.subscription.current_period_start == datetime(2024, 2, 15, 12, tzinfo=timezone.utc)
    assert outcome.subscription.current_period_end == datetime(2024, 3, 15, 12, tzinfo=timezone.utc)


def test_invoice_for_unknown_subscription_is_orphan(engine: ReconciliationEngine, orders: InMemoryOrderStore) -> None:
    invoice = {"id": "in_x", "subscription": "sub_unknown", "billing_reason": "subscription_cycle"}
    outcome = engine.handle_stripe_event(stripe_event("evt_7", "invoice.paid", invoice))
    assert outcome.result is ReconcileResult.ORPHAN
    assert len(orders.orphans) == 1
    assert ("stripe", "evt_7") in orders.webhooks


def test_unhandled_stripe_event_type(engine: ReconciliationEngine) -> None:
    outcome = engine.handle_stripe_event(stripe_event("evt_8", "customer.created", {"id": "cus_1"}))
    assert outcome.result is ReconcileResult.IGNORED


def test_poll_event_source_is_not_recorded(engine: ReconciliationEngine, orders: InMemoryOrderStore) -> None:
    order = start(engine).order
    event = payu_event("COMPLETED", ext=order.external_order_id, source=EventSource.POLL)
    engine.apply_event(event)
    assert orders.webhooks == {}
    assert orders.orphans == []
