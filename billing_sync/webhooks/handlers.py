"""Webhook HTTP handlers: FastAPI routes for inbound billing provider webhooks.

Each delivery:
1. Reads the raw body (needed for HMAC verification)
2. Hands it to ``WebhookReceiver`` (verify, dedupe, record, enqueue)
3. Returns 200 ``{"received": true}`` for new and duplicate deliveries

Security contract:
- Never return error details to the webhook caller
- 400 for signature failures and malformed events, 503 when the queue is down
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_sync.errors import QueueUnavailable, SignatureInvalid, ValidationFailure
from billing_sync.webhooks.receiver import WebhookReceiver

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"

# Webhook receive counter for monitoring (per status)
_webhook_counts: dict[str, int] = {}


def _log_webhook(event_type: str, event_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[status] = _webhook_counts.get(status, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT event=%s id=%s status=%s count=%d",
        event_type,
        event_id,
        status,
        sum(_webhook_counts.values()),
    )


def webhook_counts() -> dict[str, int]:
    return dict(_webhook_counts)


async def _handle_webhook(request: Request, receiver: WebhookReceiver) -> JSONResponse:
    start = time.time()
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        accepted = receiver.receive(body, signature)
    except SignatureInvalid as e:
        logger.warning("Webhook signature rejected: %s", e.message)
        _log_webhook("unknown", "unknown", "signature_failed")
        return JSONResponse({"received": False}, status_code=400)
    except ValidationFailure as e:
        logger.warning("Webhook body rejected: %s", e.message)
        _log_webhook("unknown", "unknown", "invalid_payload")
        return JSONResponse({"received": False}, status_code=400)
    except QueueUnavailable:
        _log_webhook("unknown", "unknown", "enqueue_failed")
        return JSONResponse({"received": False}, status_code=503)

    status = "duplicate" if accepted.duplicate else "enqueued"
    _log_webhook(accepted.event_type, accepted.external_event_id, status)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook accepted in %.1fms: %s", elapsed_ms, accepted.event_type)
    return JSONResponse({"received": True}, status_code=200)


def register_webhook_routes(app: FastAPI, receiver: WebhookReceiver) -> None:
    """Register the billing webhook endpoint on the FastAPI app."""

    @app.post("/webhooks/billing")
    async def billing_webhook(request: Request):
        """Receive billing provider webhooks (signature-verified)."""
        return await _handle_webhook(request, receiver)

    @app.get("/webhooks/status")
    async def webhook_status():
        """Webhook receive counts by outcome."""
        return {"counts": webhook_counts()}

    logger.info("Webhook routes registered: /webhooks/billing")
