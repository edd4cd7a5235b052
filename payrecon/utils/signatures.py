"""Webhook signature verification.

Both providers sign the raw request body with a shared secret. Verification
always runs on the bytes exactly as received; a parsed and re-serialized body
is not guaranteed to be byte-identical.
"""
from __future__ import annotations

import hashlib
import hmac
from enum import Enum
from typing import Callable

import stripe  # type: ignore[import-untyped]

_PAYU_ALGORITHMS = {
    "SHA-256": hashlib.sha256,
    "SHA256": hashlib.sha256,
    "MD5": hashlib.md5,
}


class SignatureCheck(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"


def _as_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def parse_payu_signature_header(header: str) -> dict[str, str]:
    """Split ``sender=checkout;signature=...;algorithm=SHA-256`` into a dict.

    A header without any ``key=value`` pair is taken as a bare hex signature.
    """
    header = header.strip()
    if "=" not in header:
        return {"signature": header}
    parts: dict[str, str] = {}
    for chunk in header.split(";"):
        key, sep, value = chunk.partition("=")
        if sep:
            parts[key.strip().lower()] = value.strip()
    return parts


def verify_payu_signature(raw_body: bytes, signature_header: str, shared_secret: bytes | str) -> bool:
    parts = parse_payu_signature_header(signature_header)
    provided = parts.get("signature", "").lower()
    if not provided:
        return False
    digest = _PAYU_ALGORITHMS.get(parts.get("algorithm", "SHA-256").upper())
    if digest is None:
        return False
    expected = hmac.new(_as_bytes(shared_secret), raw_body, digest).hexdigest()
    return hmac.compare_digest(expected, provided)


def verify_stripe_signature(
    raw_body: bytes,
    signature_header: str,
    shared_secret: bytes | str,
    tolerance: int | None = 300,
) -> bool:
    """Check a ``Stripe-Signature`` header (``t=...,v1=...``) via the stripe SDK."""
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    secret = shared_secret.decode("utf-8") if isinstance(shared_secret, bytes) else shared_secret
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError:
        return False
    return True


def check_signature(
    verifier: Callable[[bytes, str, bytes | str], bool],
    raw_body: bytes,
    signature_header: str | None,
    shared_secret: bytes | str,
) -> SignatureCheck:
    """Run ``verifier``, reporting an absent header separately from a bad one."""
    if not signature_header or not signature_header.strip():
        return SignatureCheck.MISSING
    if verifier(raw_body, signature_header, shared_secret):
        return SignatureCheck.VALID
    return SignatureCheck.INVALID
