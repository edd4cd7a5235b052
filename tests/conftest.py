from __future__ import annotations

import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from payrecon.config import Settings
from payrecon.domain.enums import EventSource, ProviderName, ResponseShape
from payrecon.domain.models import PaymentEvent
from payrecon.providers.base import AccessToken, GatewayOrderResult, PaymentGateway
from payrecon.repositories.memory_store import InMemoryOrderStore, InMemorySubscriptionStore
from payrecon.services.reconciliation import ReconciliationEngine

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """Scripted gateway: ``results`` for create_order, ``statuses`` for polls."""

    def __init__(self, name: ProviderName = ProviderName.PAYU) -> None:
        self.name = name
        self.results: list[GatewayOrderResult | Exception] = []
        self.statuses: dict[str, str | Exception] = {}
        self.requests: list = []
        self.status_calls: list[tuple[str | None, str | None]] = []

    async def authenticate(self) -> AccessToken:
        return AccessToken(value="fake-token")

    async def create_order(self, request, *, timeout=None):  # type: ignore[no-untyped-def]
        self.validate(request)
        self.requests.append(request)
        outcome: GatewayOrderResult | Exception
        if self.results:
            outcome = self.results.pop(0)
        else:
            outcome = GatewayOrderResult(
                outcome_kind=ResponseShape.JSON_ORDER,
                provider_order_id=f"PAYU-{len(self.requests)}",
                redirect_target=f"https://secure.snd.payu.com/pay/?orderId=PAYU-{len(self.requests)}",
                status_code=201,
            )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_order_status(self, provider_order_id, *, external_order_id=None, timeout=None):  # type: ignore[no-untyped-def]
        self.status_calls.append((provider_order_id, external_order_id))
        status = self.statuses.get(external_order_id or "", "PENDING")
        if isinstance(status, Exception):
            raise status
        return PaymentEvent(
            provider=self.name,
            provider_status=status,
            provider_order_id=provider_order_id,
            external_order_id=external_order_id,
            source=EventSource.POLL,
        )


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def cfg() -> Settings:
    return Settings(
        app_env="sandbox",
        public_base_url="https://billing.example.com",
        db_host="",
    )


@pytest.fixture
def orders(clock: FrozenClock) -> InMemoryOrderStore:
    return InMemoryOrderStore(clock)


@pytest.fixture
def subscriptions(clock: FrozenClock) -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore(clock)


@pytest.fixture
def payu() -> FakeGateway:
    return FakeGateway(ProviderName.PAYU)


@pytest.fixture
def stripe_gateway() -> FakeGateway:
    return FakeGateway(ProviderName.STRIPE)


@pytest.fixture
def engine(orders, subscriptions, payu, stripe_gateway, clock, cfg) -> ReconciliationEngine:  # type: ignore[no-untyped-def]
    return ReconciliationEngine(
        orders,
        subscriptions,
        {ProviderName.PAYU: payu, ProviderName.STRIPE: stripe_gateway},
        clock=clock,
        cfg=cfg,
        sleep=no_sleep,
    )


@pytest.fixture
def client(engine: ReconciliationEngine):  # type: ignore[no-untyped-def]
    from fastapi.testclient import TestClient

    from payrecon.main import app
    from payrecon.routes.deps import get_engine

    app.dependency_overrides[get_engine] = lambda: engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
