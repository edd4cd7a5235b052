from __future__ import annotations


class PaymentsError(Exception):
    """Base class for every error raised by the billing core."""


class GatewayError(PaymentsError):
    """Failure talking to a payment provider."""

    retryable = False

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(message)
        self.provider = provider


class ConfigurationError(GatewayError):
    """Credentials or endpoints are missing. Fatal."""


class AuthenticationError(GatewayError):
    """The provider rejected our credentials. Fatal."""


class ValidationError(GatewayError):
    """The order request is malformed; the caller must fix its input."""


class TransientGatewayError(GatewayError):
    """5xx, throttling, timeout or network failure. Retry with backoff."""

    retryable = True


class UnexpectedResponseShape(GatewayError):
    """The provider answered with something we cannot classify."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        raw_body: str = "",
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.raw_body = raw_body


class GatewayOrderNotFound(GatewayError):
    """The provider does not know the requested order."""


class ActiveSubscriptionExists(PaymentsError):
    """The user already holds an active subscription."""


class OrderNotFound(PaymentsError):
    """No local order matches the given identifier."""


class OrderLookupConflict(PaymentsError):
    """External id and provider id resolve to two different orders."""

    def __init__(self, message: str, *, external_order_id: str | None, provider_order_id: str | None):
        super().__init__(message)
        self.external_order_id = external_order_id
        self.provider_order_id = provider_order_id


class DuplicateKey(PaymentsError):
    """A uniqueness constraint in the store was violated."""


class PersistenceError(PaymentsError):
    """The store failed; the change was not durably applied."""
