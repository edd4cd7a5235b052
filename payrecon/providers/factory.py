from __future__ import annotations

from typing import Optional

import httpx

from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.utils.clock import Clock

from .base import PaymentGateway


def get_gateway(
    settings: Settings,
    name: Optional[str | ProviderName] = None,
    *,
    clock: Clock | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PaymentGateway:
    """Return a gateway client by provider name.

    Supported names:
    - "payu" -> PayUGateway
    - "stripe" -> StripeCheckoutGateway
    """
    raw = name.value if isinstance(name, ProviderName) else (name or settings.default_provider)
    normalized = raw.lower()
    if normalized == ProviderName.PAYU.value:
        from .payu import PayUGateway

        return PayUGateway(settings, clock=clock, transport=transport)
    if normalized == ProviderName.STRIPE.value:
        from .stripe_checkout import StripeCheckoutGateway

        return StripeCheckoutGateway(settings)
    msg = f"Unknown provider {raw}"
    raise ValueError(msg)
