"""
Payment-processor webhook endpoint.

Responsibility:
    Verifies the ``Stripe-Signature`` header over the raw request body, then
    hands the decoded event to WebhookReconciler in its own transaction.

Invariants enforced:
    - Nothing is reconciled unless the signature verifies against the
      configured secret.  With no secret configured the endpoint refuses
      every delivery (503) rather than accepting unsigned payloads.
    - Each event is reconciled and committed in one transaction.  A unique
      violation at commit means a concurrent delivery of the same event won;
      it is acknowledged as a duplicate.

Failure modes:
    - 400 WEBHOOK_SIGNATURE_INVALID: header missing or signature wrong.
    - 400 WEBHOOK_PAYLOAD_INVALID: body is not a JSON event object.
    - 503 RECONCILIATION_RETRYABLE / WEBHOOK_NOT_CONFIGURED: the processor
      should redeliver.
"""

import json
from typing import Any

import stripe
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from billing_api.dependencies import ClockDep, ConfigDep
from billing_api.errors import error_body
from billing_api.schemas import WebhookAck
from billing_config import BillingConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.statuses import ProcessorEventOutcome
from billing_kernel.exceptions import (
    InvalidWebhookPayloadError,
    ReconciliationRetryableError,
    WebhookSignatureError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.webhook_reconciler import WebhookReconciler

logger = get_logger("api.webhooks")

router = APIRouter(tags=["webhooks"])


def verify_event(payload: bytes, signature: str | None, secret: str, tolerance: int) -> dict[str, Any]:
    """
    Verify a signed delivery and decode it.

    Raises:
        WebhookSignatureError: header missing or signature does not verify.
        InvalidWebhookPayloadError: body is not a JSON object with an id.
    """
    if not signature:
        raise WebhookSignatureError("missing Stripe-Signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidWebhookPayloadError(None, "body is not UTF-8") from exc
    try:
        stripe.WebhookSignature.verify_header(text, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc

    try:
        event = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidWebhookPayloadError(None, "body is not valid JSON") from exc
    if not isinstance(event, dict) or not event.get("id"):
        raise InvalidWebhookPayloadError(None, "event object with an id is required")
    return event


def reconcile_event(event: dict[str, Any], config: BillingConfig, clock: Clock) -> WebhookAck:
    """Reconcile one verified event in its own committed transaction."""
    event_id = str(event["id"])
    try:
        with session_scope() as session:
            result = WebhookReconciler(
                session,
                clock,
                mark_overdue_on_failure=config.webhooks.mark_overdue_on_payment_failure,
            ).handle_payload(event)
    except IntegrityError:
        logger.info("webhook_commit_conflict_duplicate", extra={"event_id": event_id})
        return WebhookAck(event_id=event_id, outcome=ProcessorEventOutcome.DUPLICATE)
    except SQLAlchemyError as exc:
        logger.error("webhook_commit_failed", extra={"event_id": event_id}, exc_info=True)
        raise ReconciliationRetryableError(event_id, str(exc)) from exc
    return WebhookAck(event_id=result.event_id, outcome=result.outcome)


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    config: ConfigDep,
    clock: ClockDep,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    if not config.webhooks.is_configured:
        logger.error("webhook_secret_not_configured")
        return JSONResponse(
            status_code=503,
            content=error_body("WEBHOOK_NOT_CONFIGURED", "Webhook signing secret is not configured"),
        )

    payload = await request.body()
    event = verify_event(
        payload,
        stripe_signature,
        config.webhooks.signing_secret,
        config.webhooks.tolerance_seconds,
    )
    with LogContext.bind(processor_event_id=str(event["id"])):
        logger.info(
            "webhook_received",
            extra={"event_id": event["id"], "event_type": event.get("type")},
        )
        return await run_in_threadpool(reconcile_event, event, config, clock)
