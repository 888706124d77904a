"""Ledger webhook receiver.

The provider POSTs enhanced transactions (one object or a list). The body is
authenticated with an HMAC-SHA256 hex digest of the raw bytes when a secret is
configured. Any event failure answers 500 so the provider redelivers; the
engine is idempotent, so redelivering already-processed events is harmless.
"""

from __future__ import annotations

import hashlib
import hmac
import json

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from indexer.decoding.events import parse_webhook_payload
from indexer.exceptions import WebhookAuthError

log = structlog.get_logger(__name__)

router = APIRouter()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Raise WebhookAuthError unless ``signature`` is the body's HMAC-SHA256 hex digest."""
    if not signature:
        raise WebhookAuthError("Missing webhook signature")
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookAuthError("Invalid webhook signature")


@router.post("/ledger")
async def receive_ledger_webhook(request: Request) -> JSONResponse:
    """Decode and reconcile every event in the delivered transactions."""
    settings = request.app.state.settings
    processor = request.app.state.processor
    body = await request.body()

    secret = settings.webhook.secret.get_secret_value()
    if secret:
        try:
            verify_signature(body, request.headers.get(settings.webhook.signature_header), secret)
        except WebhookAuthError as e:
            log.warning("webhook_unauthorized", reason=str(e))
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
    else:
        log.warning("webhook_signature_verification_disabled")

    try:
        payload = json.loads(body)
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    transactions = parse_webhook_payload(payload, settings.ledger.program_id or None)

    processed = 0
    failed = 0
    for transaction in transactions:
        result = await processor.process_transaction(transaction)
        processed += result.processed
        failed += result.failed

    log.info(
        "webhook_processed",
        transactions=len(transactions),
        processed=processed,
        failed=failed,
    )
    status_code = 500 if failed else 200
    return JSONResponse(
        {"success": failed == 0, "processed": processed, "failed": failed},
        status_code=status_code,
    )


@router.get("/ledger")
async def webhook_health() -> dict:
    """Health check used by the provider when registering the webhook."""
    return {"status": "ok", "service": "ledger-webhook"}
