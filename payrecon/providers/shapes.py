"""Classification of raw order-creation responses.

PayU documents a JSON answer but, depending on POS configuration, may answer
with a redirect or with a fully rendered HTML checkout page. Every shape is
recognized here and nowhere else.
"""
from __future__ import annotations

import json
from typing import Any, Mapping
from urllib.parse import parse_qs, urlparse

from payrecon.domain.enums import ResponseShape

from .base import GatewayOrderResult

RAW_BODY_LIMIT = 2000
REDIRECT_STATUSES = {301, 302, 303}
REDIRECT_FIELDS = ("redirectUri", "redirectUrl", "url")
ORDER_ID_FIELDS = ("orderId", "id")
HTML_MARKERS = ("<!doctype html", "<html")


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _order_id_from_url(url: str) -> str | None:
    values = parse_qs(urlparse(url).query).get("orderId")
    return values[0] if values else None


def _decode(body: bytes | str) -> str:
    if isinstance(body, bytes):
        return body.decode("utf-8", errors="replace")
    return body


def looks_like_html(text: str) -> bool:
    return text.lstrip().lower().startswith(HTML_MARKERS)


def classify_payload(
    payload: Mapping[str, Any], *, status_code: int | None = 200, raw_body: str = ""
) -> GatewayOrderResult:
    """Classify an already-decoded JSON object."""
    redirect = next((payload.get(key) for key in REDIRECT_FIELDS if payload.get(key)), None)
    raw = raw_body or json.dumps(payload, default=str)[:RAW_BODY_LIMIT]
    if not isinstance(redirect, str):
        return GatewayOrderResult(
            outcome_kind=ResponseShape.UNEXPECTED,
            raw_body=raw,
            status_code=status_code,
        )
    order_id = next((payload.get(key) for key in ORDER_ID_FIELDS if payload.get(key)), None)
    return GatewayOrderResult(
        outcome_kind=ResponseShape.JSON_ORDER,
        provider_order_id=str(order_id) if order_id else None,
        redirect_target=redirect,
        raw_body=raw,
        status_code=status_code,
    )


def classify_response(
    status_code: int, headers: Mapping[str, str], body: bytes | str
) -> GatewayOrderResult:
    """Map a raw HTTP answer onto one ResponseShape. Never raises."""
    text = _decode(body)
    truncated = text[:RAW_BODY_LIMIT]
    flat_headers = {str(k): str(v) for k, v in headers.items()}

    if status_code in REDIRECT_STATUSES:
        location = _header(headers, "location")
        if location:
            return GatewayOrderResult(
                outcome_kind=ResponseShape.REDIRECT,
                provider_order_id=_order_id_from_url(location),
                redirect_target=location,
                raw_body=truncated,
                status_code=status_code,
                headers=flat_headers,
            )

    if status_code in {200, 201} and text.strip():
        if status_code == 200 and looks_like_html(text):
            return GatewayOrderResult(
                outcome_kind=ResponseShape.HTML_PAGE,
                raw_body=text,
                status_code=status_code,
                headers=flat_headers,
            )
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            result = classify_payload(payload, status_code=status_code, raw_body=truncated)
            if result.outcome_kind is ResponseShape.JSON_ORDER:
                return result

    return GatewayOrderResult(
        outcome_kind=ResponseShape.UNEXPECTED,
        raw_body=truncated,
        status_code=status_code,
        headers=flat_headers,
    )
