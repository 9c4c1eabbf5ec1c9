"""
WebhookReconciler -- apply payment-processor events to invoices idempotently.

Responsibility:
    Turns a verified processor payload into consistent invoice, payment,
    milestone and project state.  Decisions come from the pure
    ``domain.reconciliation.decide``; this service loads the invoice snapshot,
    performs the decided effects, and writes a ProcessorEvent row recording
    what happened.

Architecture position:
    Kernel > Services.  Called by the webhook HTTP route after signature
    verification, inside one transaction per event.

Invariants enforced:
    IDEMPOTENT_RECONCILIATION -- three layers, innermost last:
        1. processor_events.event_id: a redelivered event id is acknowledged
           as DUPLICATE without touching any invoice.
        2. decide(): an invoice that already satisfies the event (paid, or a
           payment recorded under the same payment intent) yields
           SKIP_DUPLICATE.
        3. payments.processor_reference unique index: a concurrent
           redelivery that slips past 1 and 2 fails the insert and is
           reported as DUPLICATE.

Failure modes:
    - Unknown event types, unmatched invoices and duplicates are acknowledged;
      they are outcomes, not errors.
    - InvalidWebhookPayloadError: handled event type without required data.
    - ReconciliationRetryableError: the store failed (OperationalError); the
      processor should redeliver.

Audit relevance:
    Every handled event leaves a ProcessorEvent row.  Failed payments are
    logged at WARNING and stored, never discarded.
"""

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.reconciliation import (
    InvoiceSnapshot,
    PaymentEvent,
    ReconciliationAction,
    ReconciliationDecision,
    SideEffect,
    decide,
    parse_processor_event,
)
from billing_kernel.domain.statuses import InvoiceStatus, ProcessorEventOutcome, ProjectStatus
from billing_kernel.exceptions import (
    DuplicatePaymentReferenceError,
    ReconciliationRetryableError,
)
from billing_kernel.invariants import BillingInvariant
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.processor_event import ProcessorEvent
from billing_kernel.models.project import Project
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.services.base import BaseService
from billing_kernel.services.invoice_ledger import InvoiceLedger
from billing_kernel.services.milestone_manager import MilestoneManager
from billing_kernel.services.payment_recorder import PaymentRecorder

logger = get_logger("services.webhook_reconciler")

PROCESSOR_PAYMENT_METHOD = "stripe"


def hash_payload(payload: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ReconciliationResult:
    """
    What happened to one processor event.

    Every outcome is acknowledged to the processor; only a raised
    ReconciliationRetryableError asks for redelivery.
    """

    event_id: str
    event_type: str
    outcome: ProcessorEventOutcome
    invoice_id: UUID | None = None
    payment_id: UUID | None = None
    invoice_status: InvoiceStatus | None = None
    detail: str | None = None
    project_started: bool = False


class WebhookReconciler(BaseService):
    """
    Applies processor events.

    Contract:
        ``handle_payload`` is safe to call any number of times with the same
        payload: only the first call changes invoice state.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        mark_overdue_on_failure: bool = False,
    ):
        super().__init__(session, clock)
        self._mark_overdue_on_failure = mark_overdue_on_failure
        self._selector = InvoiceSelector(session)
        self._ledger = InvoiceLedger(session, clock)
        self._recorder = PaymentRecorder(session, clock)
        self._milestones = MilestoneManager(session, clock)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def handle_payload(self, payload: Mapping[str, Any]) -> ReconciliationResult:
        """Reconcile one verified processor payload."""
        event_id = str(payload.get("id") or "")
        event_type = str(payload.get("type") or "")
        try:
            with LogContext.bind(processor_event_id=event_id or None):
                return self._handle(payload, event_id, event_type)
        except OperationalError as exc:
            logger.error(
                "webhook_reconciliation_transient_failure",
                extra={"event_id": event_id, "event_type": event_type},
                exc_info=True,
            )
            raise ReconciliationRetryableError(event_id, str(exc.orig)) from exc

    def _handle(
        self,
        payload: Mapping[str, Any],
        event_id: str,
        event_type: str,
    ) -> ReconciliationResult:
        payload_hash = hash_payload(payload)

        seen = self.session.scalars(
            select(ProcessorEvent).where(ProcessorEvent.event_id == event_id)
        ).one_or_none()
        if seen is not None:
            return self._already_seen(seen, event_id, event_type, payload_hash)

        event = parse_processor_event(payload)
        if event is None:
            logger.info(
                "webhook_event_ignored",
                extra={"event_id": event_id, "event_type": event_type},
            )
            result = ReconciliationResult(
                event_id=event_id,
                event_type=event_type,
                outcome=ProcessorEventOutcome.IGNORED,
                detail="unhandled_event_type",
            )
            return self._store(result, None, payload_hash)

        result = self.reconcile(event)
        return self._store(result, event.payment_intent_id, payload_hash)

    def _already_seen(
        self,
        seen: ProcessorEvent,
        event_id: str,
        event_type: str,
        payload_hash: str,
    ) -> ReconciliationResult:
        if seen.payload_hash != payload_hash:
            logger.error(
                "webhook_event_payload_mismatch",
                extra={
                    "event_id": event_id,
                    "stored_hash": seen.payload_hash,
                    "received_hash": payload_hash,
                },
            )
            return ReconciliationResult(
                event_id=event_id,
                event_type=event_type,
                outcome=ProcessorEventOutcome.REJECTED,
                invoice_id=seen.invoice_id,
                detail="payload_mismatch",
            )
        logger.info(
            "webhook_event_redelivered",
            extra={
                "event_id": event_id,
                "first_outcome": seen.outcome.value,
                "invariant": BillingInvariant.IDEMPOTENT_RECONCILIATION.value,
            },
        )
        return ReconciliationResult(
            event_id=event_id,
            event_type=event_type,
            outcome=ProcessorEventOutcome.DUPLICATE,
            invoice_id=seen.invoice_id,
            detail="event_already_processed",
        )

    def _store(
        self,
        result: ReconciliationResult,
        payment_intent_id: str | None,
        payload_hash: str,
    ) -> ReconciliationResult:
        record = ProcessorEvent(
            event_id=result.event_id,
            event_type=result.event_type,
            payment_intent_id=payment_intent_id,
            payload_hash=payload_hash,
            outcome=result.outcome,
            invoice_id=result.invoice_id,
            detail=result.detail,
            received_at=self._clock.now(),
        )
        try:
            with self._savepoint():
                self.session.add(record)
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            logger.info(
                "webhook_event_concurrent_duplicate",
                extra={"event_id": result.event_id},
            )
            return ReconciliationResult(
                event_id=result.event_id,
                event_type=result.event_type,
                outcome=ProcessorEventOutcome.DUPLICATE,
                invoice_id=result.invoice_id,
                detail="event_already_processed",
            )
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _find_invoice(self, event: PaymentEvent) -> Invoice | None:
        invoice = self.session.execute(
            select(Invoice)
            .where(Invoice.stripe_payment_intent_id == event.payment_intent_id)
            .with_for_update()
        ).scalar_one_or_none()
        if invoice is not None or event.invoice_hint is None:
            return invoice

        if self.session.get(Invoice, event.invoice_hint) is None:
            return None
        hinted = self._ledger.get_invoice(event.invoice_hint, lock=True)
        if hinted.stripe_payment_intent_id not in (None, event.payment_intent_id):
            return None
        hinted.stripe_payment_intent_id = event.payment_intent_id
        self.session.flush()
        logger.info(
            "payment_intent_attached_from_metadata",
            extra={"invoice_id": str(hinted.id), "payment_intent_id": event.payment_intent_id},
        )
        return hinted

    def _snapshot(self, invoice: Invoice, event: PaymentEvent) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            invoice_id=invoice.id,
            project_id=invoice.project_id,
            milestone_id=invoice.milestone_id,
            status=invoice.status,
            amount=invoice.amount,
            total_paid=self._selector.total_paid(invoice.id),
            reference_paid=self._selector.paid_under_reference(event.payment_intent_id),
        )

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        """Decide and apply one parsed event; does not write the ProcessorEvent row."""
        invoice = self._find_invoice(event)
        snapshot = self._snapshot(invoice, event) if invoice is not None else None
        decision = decide(snapshot, event, self._mark_overdue_on_failure)

        with LogContext.bind(invoice_id=str(invoice.id) if invoice is not None else None):
            if decision.action == ReconciliationAction.IGNORE_UNMATCHED:
                logger.info(
                    "webhook_invoice_not_found",
                    extra={
                        "event_id": event.event_id,
                        "payment_intent_id": event.payment_intent_id,
                    },
                )
                return self._result(event, ProcessorEventOutcome.UNMATCHED, decision, None)

            if decision.action == ReconciliationAction.SKIP_DUPLICATE:
                logger.info(
                    "webhook_duplicate_skipped",
                    extra={
                        "event_id": event.event_id,
                        "reason": decision.reason,
                        "invariant": BillingInvariant.IDEMPOTENT_RECONCILIATION.value,
                    },
                )
                return self._result(event, ProcessorEventOutcome.DUPLICATE, decision, invoice)

            if decision.action == ReconciliationAction.RECORD_FAILURE:
                return self._record_failure(event, decision, invoice)

            return self._apply_payment(event, decision, invoice)

    def _record_failure(
        self,
        event: PaymentEvent,
        decision: ReconciliationDecision,
        invoice: Invoice | None,
    ) -> ReconciliationResult:
        logger.warning(
            "payment_failed_recorded",
            extra={
                "event_id": event.event_id,
                "payment_intent_id": event.payment_intent_id,
                "invoice_id": str(invoice.id) if invoice is not None else None,
                "reason": event.reason,
            },
        )
        if invoice is not None and SideEffect.MARK_OVERDUE in decision.effects:
            self._ledger.mark_overdue(invoice.id)
        return self._result(event, ProcessorEventOutcome.FAILURE_RECORDED, decision, invoice)

    def _apply_payment(
        self,
        event: PaymentEvent,
        decision: ReconciliationDecision,
        invoice: Invoice,
    ) -> ReconciliationResult:
        try:
            payment = self._recorder.record_payment(
                invoice.id,
                decision.amount,
                payment_method=PROCESSOR_PAYMENT_METHOD,
                processor_reference=event.payment_intent_id,
                notes=f"Confirmed by processor event {event.event_id}",
            )
        except DuplicatePaymentReferenceError:
            logger.info(
                "webhook_duplicate_skipped",
                extra={"event_id": event.event_id, "reason": "payment_reference_exists"},
            )
            return self._result(event, ProcessorEventOutcome.DUPLICATE, decision, invoice)

        project_started = False
        if payment.new_status == InvoiceStatus.PAID:
            if SideEffect.MARK_MILESTONE_BILLED in decision.effects and invoice.milestone_id:
                self._milestones.mark_billed(invoice.milestone_id)
            if SideEffect.SIGNAL_INVOICE_FULLY_PAID in decision.effects:
                project_started = self._on_invoice_fully_paid(invoice)

        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ProcessorEventOutcome.APPLIED,
            invoice_id=invoice.id,
            payment_id=payment.payment_id,
            invoice_status=payment.new_status,
            detail=decision.reason,
            project_started=project_started,
        )

    def _on_invoice_fully_paid(self, invoice: Invoice) -> bool:
        """Move a planning project to in_progress on its first fully paid invoice."""
        project = self.session.execute(
            select(Project).where(Project.id == invoice.project_id).with_for_update()
        ).scalar_one()
        paid_count = self.session.scalar(
            select(func.count(Invoice.id)).where(
                Invoice.project_id == project.id,
                Invoice.status == InvoiceStatus.PAID,
            )
        )
        logger.info(
            "invoice_fully_paid",
            extra={
                "invoice_id": str(invoice.id),
                "project_id": str(project.id),
                "paid_invoice_count": paid_count,
            },
        )
        if paid_count != 1 or project.status != ProjectStatus.PLANNING:
            return False
        project.status = ProjectStatus.IN_PROGRESS
        self.session.flush()
        logger.info(
            "project_status_changed",
            extra={
                "project_id": str(project.id),
                "from_status": ProjectStatus.PLANNING.value,
                "to_status": ProjectStatus.IN_PROGRESS.value,
                "trigger_invoice_id": str(invoice.id),
            },
        )
        return True

    def _result(
        self,
        event: PaymentEvent,
        outcome: ProcessorEventOutcome,
        decision: ReconciliationDecision,
        invoice: Invoice | None,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome,
            invoice_id=invoice.id if invoice is not None else None,
            invoice_status=invoice.status if invoice is not None else None,
            detail=decision.reason,
        )
