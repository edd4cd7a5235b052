from __future__ import annotations

from enum import Enum


class Currency(str, Enum):
    """Known currencies."""

    PLN = "PLN"
    EUR = "EUR"
    USD = "USD"


class ProviderName(str, Enum):
    """Supported payment providers (strategy selector)."""

    PAYU = "payu"
    STRIPE = "stripe"


class BillingCycle(str, Enum):
    """Subscription billing period."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return 1 if self is BillingCycle.MONTHLY else 12


class ResponseShape(str, Enum):
    """Shape of a raw order-creation response after normalization."""

    REDIRECT = "redirect"
    JSON_ORDER = "json_order"
    HTML_PAGE = "html_page"
    UNEXPECTED = "unexpected"


class EventSource(str, Enum):
    """Where a payment event came from."""

    WEBHOOK = "webhook"
    POLL = "poll"
