"""Webhook signature verification (provider v1 scheme), constant-time HMAC.

Header format: ``t=<timestamp>,v1=<signature>[,v1=<signature>...][,v0=...]``
where each v1 signature is HMAC-SHA256(secret, "<timestamp>." + body) in hex.

Security contract:
- Comparison uses hmac.compare_digest() (constant-time)
- Missing secret -> verification always fails (fail-closed)
- Timestamp outside the tolerance window -> rejected (replay protection)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time

from billing_sync.errors import SignatureInvalid

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def _parse_header(signature_header: str) -> tuple[str | None, list[str]]:
    timestamp = None
    signatures: list[str] = []
    for item in signature_header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def signature_header(secret: str, body: bytes, timestamp: int | None = None) -> str:
    """Build a header value the way the provider signs deliveries."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"


def verify_signature(
    body: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Verify a delivery; raises ``SignatureInvalid`` on any failure."""
    if not secret:
        logger.warning("Webhook secret not set; rejecting webhook")
        raise SignatureInvalid("webhook secret not configured")
    if not signature_header:
        raise SignatureInvalid("missing signature header")

    timestamp_str, signatures = _parse_header(signature_header)
    if not timestamp_str:
        raise SignatureInvalid("signature header has no timestamp")
    try:
        timestamp = int(timestamp_str)
    except ValueError:
        raise SignatureInvalid("signature timestamp is not an integer") from None

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning("Webhook timestamp outside tolerance: %s", timestamp)
        raise SignatureInvalid("signature timestamp outside tolerance")

    if not signatures:
        raise SignatureInvalid("signature header has no v1 signature")

    expected = compute_signature(secret, timestamp, body)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureInvalid("signature mismatch")
