from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Dict

import httpx

from payrecon.config import Settings
from payrecon.domain.enums import Currency, EventSource, ProviderName, ResponseShape
from payrecon.domain.models import PaymentEvent
from payrecon.errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayOrderNotFound,
    TransientGatewayError,
    UnexpectedResponseShape,
    ValidationError,
)
from payrecon.utils.clock import Clock, SystemClock

from .base import AccessToken, GatewayOrderRequest, GatewayOrderResult, PaymentGateway
from .shapes import RAW_BODY_LIMIT, classify_response
from .token_cache import TokenCache

logger = logging.getLogger(__name__)

PROVIDER = ProviderName.PAYU.value


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None and value != "" else None
    except (TypeError, ValueError):
        return None


class PayUGateway(PaymentGateway):
    """PayU REST API v2.1 client.

    - authenticate(): OAuth client_credentials, cached by TokenCache
    - create_order(): POST /api/v2_1/orders, answer classified by shapes.classify_response
    - get_order_status(): GET /api/v2_1/orders/{orderId} (or /orders/ext/{extOrderId})
    """

    name = ProviderName.PAYU
    supported_currency = Currency.PLN
    minimum_amount = 100

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.base_url = settings.payu_base_url
        credentials = settings.payu_credentials
        self.pos_id = credentials["pos_id"]
        self.client_id = credentials["client_id"]
        self.client_secret = credentials["client_secret"]
        self.clock = clock or SystemClock()
        self._transport = transport
        self.tokens = TokenCache(
            self._fetch_token,
            self.clock,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
            provider=PROVIDER,
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            follow_redirects=False,
        )

    def _require_config(self) -> None:
        missing = [
            name
            for name, value in (
                ("pos_id", self.pos_id),
                ("client_id", self.client_id),
                ("client_secret", self.client_secret),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"PayU credentials not configured: {', '.join(missing)}", provider=PROVIDER
            )

    async def _fetch_token(self) -> AccessToken:
        self._require_config()
        token_url = f"{self.base_url}/pl/standard/user/oauth/authorize"
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        started = time.monotonic()
        try:
            async with self._client(self.settings.token_timeout_seconds) as client:
                resp = await client.post(token_url, data=data)
        except httpx.TimeoutException as exc:
            raise TransientGatewayError("PayU OAuth timed out", provider=PROVIDER) from exc
        except httpx.TransportError as exc:
            raise TransientGatewayError(f"PayU OAuth unreachable: {exc}", provider=PROVIDER) from exc
        self._log_event(
            operation="AUTH",
            request_url=token_url,
            response_status=resp.status_code,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        if resp.status_code in {400, 401, 403}:
            raise AuthenticationError(
                f"PayU rejected client credentials ({resp.status_code})", provider=PROVIDER
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientGatewayError(f"PayU OAuth error ({resp.status_code})", provider=PROVIDER)
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise UnexpectedResponseShape(
                "PayU OAuth answered without an access token",
                provider=PROVIDER,
                status_code=resp.status_code,
                raw_body=resp.text[:RAW_BODY_LIMIT],
            )
        expires_in = _int_or_none(payload.get("expires_in"))
        expires_at = self.clock.now() + timedelta(seconds=expires_in) if expires_in else None
        return AccessToken(
            value=str(payload["access_token"]),
            expires_at=expires_at,
            token_type=str(payload.get("token_type") or "bearer"),
        )

    async def authenticate(self) -> AccessToken:
        return await self.tokens.get()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        json: Dict[str, Any] | None = None,
        timeout: float,
    ) -> httpx.Response:
        """Send an authorized request; on 401 refresh the token and retry once."""
        resp: httpx.Response | None = None
        for attempt in range(2):
            token = await self.authenticate()
            headers = {
                "Authorization": f"Bearer {token.value}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            try:
                async with self._client(timeout) as client:
                    resp = await client.request(method, url, headers=headers, json=json)
            except httpx.TimeoutException as exc:
                raise TransientGatewayError(f"PayU {method} timed out", provider=PROVIDER) from exc
            except httpx.TransportError as exc:
                raise TransientGatewayError(f"PayU unreachable: {exc}", provider=PROVIDER) from exc
            if resp.status_code == 401 and attempt == 0:
                logger.info(
                    "payu token rejected, re-authenticating",
                    extra={"provider": PROVIDER, "response_code": 401, "endpoint": url},
                )
                self.tokens.invalidate(token)
                continue
            break
        assert resp is not None
        return resp

    def _raise_for_error(self, resp: httpx.Response, operation: str) -> None:
        code = resp.status_code
        if code < 400:
            return
        detail = resp.text[:200]
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            status_info = body.get("status") or {}
            if isinstance(status_info, dict):
                detail = str(
                    status_info.get("statusDesc") or status_info.get("statusCode") or detail
                )
        if code in {401, 403}:
            raise AuthenticationError(f"PayU {operation} unauthorized ({code})", provider=PROVIDER)
        if code == 404:
            raise GatewayOrderNotFound(f"PayU {operation}: order not found", provider=PROVIDER)
        if code in {400, 422}:
            raise ValidationError(f"PayU {operation} rejected: {detail}", provider=PROVIDER)
        if code == 429 or code >= 500:
            raise TransientGatewayError(f"PayU {operation} unavailable ({code})", provider=PROVIDER)
        raise UnexpectedResponseShape(
            f"PayU {operation} answered {code}",
            provider=PROVIDER,
            status_code=code,
            raw_body=resp.text[:RAW_BODY_LIMIT],
        )

    def build_order_payload(self, request: GatewayOrderRequest) -> Dict[str, Any]:
        first_name = request.customer_first_name or "Klient"
        return {
            "notifyUrl": self.settings.payu_notify_url,
            "continueUrl": self.settings.payu_continue_url,
            "customerIp": request.customer_ip or "127.0.0.1",
            "merchantPosId": self.pos_id,
            "description": request.description,
            "currencyCode": request.currency.value,
            "totalAmount": str(request.amount),
            "extOrderId": request.external_order_id,
            "buyer": {
                "email": request.customer_email,
                "firstName": first_name,
                "language": "pl",
            },
            "products": [
                {
                    "name": item.name,
                    "unitPrice": str(item.unit_price),
                    "quantity": str(item.quantity),
                }
                for item in request.line_items
            ],
        }

    async def create_order(
        self, request: GatewayOrderRequest, *, timeout: float | None = None
    ) -> GatewayOrderResult:
        self.validate(request)
        self._require_config()
        payload = self.build_order_payload(request)
        orders_url = f"{self.base_url}/api/v2_1/orders"
        started = time.monotonic()
        resp = await self._send(
            "POST",
            orders_url,
            json=payload,
            timeout=timeout or self.settings.order_timeout_seconds,
        )
        latency_ms = int((time.monotonic() - started) * 1000)
        # A 200 HTML page is a valid outcome; only real error codes are raised here
        if resp.status_code >= 400:
            self._log_event(
                operation="CREATE",
                request_url=orders_url,
                token=request.external_order_id,
                response_status=resp.status_code,
                error_message=resp.text[:512],
                latency_ms=latency_ms,
            )
            self._raise_for_error(resp, "order create")
        result = classify_response(resp.status_code, resp.headers, resp.content)
        self._log_event(
            operation="CREATE",
            request_url=orders_url,
            token=request.external_order_id,
            response_status=resp.status_code,
            response_body={"shape": result.outcome_kind.value, "orderId": result.provider_order_id},
            latency_ms=latency_ms,
        )
        if result.outcome_kind is ResponseShape.UNEXPECTED:
            logger.error(
                "payu order create returned unexpected shape",
                extra={
                    "provider": PROVIDER,
                    "external_order_id": request.external_order_id,
                    "response_code": resp.status_code,
                    "raw_body": result.raw_body,
                    "event": str(dict(resp.headers)),
                },
            )
            raise UnexpectedResponseShape(
                f"PayU order create returned an unrecognized response ({resp.status_code})",
                provider=PROVIDER,
                status_code=resp.status_code,
                raw_body=result.raw_body,
            )
        logger.info(
            "payu order created",
            extra={
                "provider": PROVIDER,
                "external_order_id": request.external_order_id,
                "provider_order_id": result.provider_order_id,
                "outcome": result.outcome_kind.value,
            },
        )
        return result

    async def get_order_status(
        self,
        provider_order_id: str | None,
        *,
        external_order_id: str | None = None,
        timeout: float | None = None,
    ) -> PaymentEvent:
        if provider_order_id:
            order_url = f"{self.base_url}/api/v2_1/orders/{provider_order_id}"
        elif external_order_id:
            order_url = f"{self.base_url}/api/v2_1/orders/ext/{external_order_id}"
        else:
            raise ValidationError("PayU status query needs an order id", provider=PROVIDER)
        started = time.monotonic()
        resp = await self._send(
            "GET", order_url, timeout=timeout or self.settings.status_timeout_seconds
        )
        self._log_event(
            operation="STATUS",
            request_url=order_url,
            token=provider_order_id or external_order_id,
            response_status=resp.status_code,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        self._raise_for_error(resp, "order status")
        try:
            data = resp.json()
        except ValueError:
            data = None
        orders = data.get("orders") if isinstance(data, dict) else None
        if not orders or not isinstance(orders[0], dict):
            raise UnexpectedResponseShape(
                "PayU order status answered without orders",
                provider=PROVIDER,
                status_code=resp.status_code,
                raw_body=resp.text[:RAW_BODY_LIMIT],
            )
        return self.event_from_order(orders[0], source=EventSource.POLL)

    @staticmethod
    def event_from_order(
        order: Dict[str, Any],
        *,
        source: EventSource = EventSource.WEBHOOK,
        event_id: str | None = None,
    ) -> PaymentEvent:
        return PaymentEvent(
            provider=ProviderName.PAYU,
            provider_status=str(order.get("status") or ""),
            provider_order_id=str(order["orderId"]) if order.get("orderId") else None,
            external_order_id=str(order["extOrderId"]) if order.get("extOrderId") else None,
            total_amount=_int_or_none(order.get("totalAmount")),
            currency=str(order.get("currencyCode") or "") or None,
            source=source,
            event_id=event_id,
            raw=dict(order),
        )

    @classmethod
    def parse_notification(cls, payload: Dict[str, Any]) -> PaymentEvent:
        """Build an event from a notification body (``{"order": {...}}`` or flat)."""
        order = payload.get("order") if isinstance(payload.get("order"), dict) else payload
        if not order.get("status") or not (order.get("orderId") or order.get("extOrderId")):
            raise ValueError("PayU notification without order status or id")
        event_id = order.get("orderId")
        if event_id:
            event_id = f"{event_id}:{order.get('status')}"
        return cls.event_from_order(order, source=EventSource.WEBHOOK, event_id=event_id)

    def _log_event(
        self,
        *,
        operation: str,
        request_url: str,
        token: str | None = None,
        response_status: int | None = None,
        response_body: Dict[str, Any] | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
    ) -> None:
        logger.info(
            "provider call",
            extra={
                "provider": PROVIDER,
                "event": operation,
                "endpoint": request_url,
                "external_order_id": token,
                "response_code": response_status,
                "outcome": response_body,
                "error": error_message,
                "latency_ms": latency_ms,
            },
        )
