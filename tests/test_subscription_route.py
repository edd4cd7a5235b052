from __future__ import annotations

import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from test_checkout import checkout, user_headers
from payrecon.domain.enums import ProviderName
from payrecon.domain.models import PaymentEvent
from payrecon.errors import PersistenceError
from payrecon.repositories.memory_store import InMemorySubscriptionStore
from payrecon.services.reconciliation import ReconciliationEngine


def complete(engine: ReconciliationEngine, external_order_id: str) -> None:
    engine.apply_event(
        PaymentEvent(
            provider=ProviderName.PAYU,
            provider_status="COMPLETED",
            provider_order_id="PAYU-1",
            external_order_id=external_order_id,
        )
    )


def test_no_subscription_before_payment(client: TestClient) -> None:
    checkout(client)
    response = client.get("/api/subscription", headers=user_headers())
    assert response.status_code == 200
    assert response.json() == {"subscription": None}


def test_completed_payment_shows_trial_subscription(client: TestClient, engine: ReconciliationEngine) -> None:
    complete(engine, checkout(client).json()["externalOrderId"])
    data = client.get("/api/subscription", headers=user_headers()).json()["subscription"]
    assert data["status"] == "active"
    assert data["planId"] == "basic"
    assert data["billingCycle"] == "monthly"
    assert data["provider"] == "payu"
    assert data["paymentAttempts"] == 0
    assert data["trialStart"].startswith("2024-01-15T12:00:00")
    assert data["trialEnd"].startswith("2024-01-29T12:00:00")
    assert data["currentPeriodEnd"].startswith("2024-02-15T12:00:00")
    assert data["canceledAt"] is None

    other = client.get("/api/subscription", headers=user_headers("u2"))
    assert other.json() == {"subscription": None}


def test_canceled_subscription_is_not_current(client: TestClient, engine: ReconciliationEngine) -> None:
    complete(engine, checkout(client).json()["externalOrderId"])
    engine.lifecycle.cancel(engine.subscriptions.find_active("u1"))  # type: ignore[arg-type]
    assert client.get("/api/subscription", headers=user_headers()).json() == {"subscription": None}


def test_subscription_requires_identity(client: TestClient) -> None:
    assert client.get("/api/subscription").status_code == 401
    headers = user_headers()
    headers.pop("X-User-Id")
    assert client.get("/api/subscription", headers=headers).status_code == 401


def test_subscription_lookup_failure(
    client: TestClient, subscriptions: InMemorySubscriptionStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    def unavailable(user_id: str):  # type: ignore[no-untyped-def]
        raise PersistenceError("connection refused")

    monkeypatch.setattr(subscriptions, "find_active", unavailable)
    response = client.get("/api/subscription", headers=user_headers())
    assert response.status_code == 500
    assert response.json() == {"detail": "Storage failure"}
