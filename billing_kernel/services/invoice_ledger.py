"""
InvoiceLedger -- invoice creation, edits, deletion and explicit transitions.

Responsibility:
    Creates invoices (always as drafts), applies partial updates, refuses to
    delete invoices that carry payments, drafts milestone invoices from the
    project budget, and performs the explicit status actions (send, cancel,
    mark overdue).  ``transition_invoice`` is the single place an invoice's
    status column is written, for this service and for PaymentRecorder.

Architecture position:
    Kernel > Services.  Called by the invoice API routes, WorkItemService
    (complete-and-bill), PaymentRecorder and WebhookReconciler.

Invariants enforced:
    DRAFT_ON_CREATE -- status is forced to DRAFT and amount must be > 0.
    STATUS_MONOTONICITY -- every status write goes through the workflow
        transition table (domain.invoice_workflow).

Failure modes:
    - InvalidAmountError: amount missing, non-decimal, or <= 0.
    - InvalidReferenceError: project (or milestone) does not exist, including
      an FK IntegrityError from the store.
    - DuplicatePaymentIntentError: payment intent already on another invoice.
    - InvoiceHasPaymentsError: delete of an invoice with payments.
    - InvalidInvoiceTransitionError: send/cancel/overdue from a wrong state.

Audit relevance:
    Creation, deletion and every status change are logged with the invoice
    id, number and both statuses.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.db.types import HUNDRED, ZERO, parse_decimal, round_amount
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import InvoiceView
from billing_kernel.domain.invoice_workflow import require_transition
from billing_kernel.domain.statuses import InvoiceStatus, InvoiceType
from billing_kernel.exceptions import (
    DuplicatePaymentIntentError,
    InvalidAmountError,
    InvalidReferenceError,
    InvoiceHasPaymentsError,
    InvoiceNotFoundError,
    MilestoneNotBillableError,
    MilestoneNotFoundError,
    MilestoneStateError,
)
from billing_kernel.invariants import BillingInvariant
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.project import Project
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.services.base import BaseService
from billing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.invoice_ledger")

INVALID_PROJECT_MESSAGE = "Invalid project associated with the invoice."
INVALID_MILESTONE_MESSAGE = "Invalid milestone associated with the invoice."

# Fields a caller may change through update_invoice
UPDATABLE_FIELDS = frozenset({
    "amount",
    "description",
    "due_date",
    "invoice_type",
    "quote_id",
    "stripe_payment_intent_id",
    "customer_name",
    "customer_email",
})


@dataclass(frozen=True)
class InvoiceDraft:
    """Caller-supplied data for a new invoice."""

    project_id: UUID
    amount: Any
    invoice_type: InvoiceType = InvoiceType.REGULAR
    description: str | None = None
    issue_date: datetime | None = None
    due_date: datetime | None = None
    milestone_id: UUID | None = None
    quote_id: UUID | None = None
    stripe_payment_intent_id: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    # Ignored: every invoice starts as a draft
    status: InvoiceStatus | None = None


def require_positive_amount(value: object) -> Decimal:
    """
    Raises:
        InvalidAmountError: not a decimal value, or not > 0.
    """
    try:
        amount = parse_decimal(value)
    except ValueError as exc:
        raise InvalidAmountError(value, str(exc)) from exc
    amount = round_amount(amount)
    if amount <= ZERO:
        raise InvalidAmountError(value)
    return amount


def transition_invoice(
    invoice: Invoice,
    to_status: InvoiceStatus,
    now: datetime,
    action: str,
) -> InvoiceStatus:
    """
    Move ``invoice`` to ``to_status`` through the workflow table.

    Returns the previous status.

    Raises:
        InvalidInvoiceTransitionError: transition is not allowed.
    """
    previous = invoice.status
    require_transition(invoice.id, previous, to_status)
    invoice.status = to_status
    if to_status == InvoiceStatus.SENT:
        invoice.sent_at = now
    elif to_status == InvoiceStatus.PAID:
        invoice.paid_at = now
    elif to_status == InvoiceStatus.CANCELLED:
        invoice.cancelled_at = now
    logger.info(
        "invoice_status_changed",
        extra={
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "from_status": previous.value,
            "to_status": to_status.value,
            "action": action,
        },
    )
    return previous


class InvoiceLedger(BaseService):
    """
    Invoice write path.

    Contract:
        Every method flushes and returns the ORM row; the caller commits.

    Non-goals:
        - Does NOT record payments (PaymentRecorder).
        - Does NOT render or email invoices.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        number_prefix: str = "INV",
        payment_terms_days: int = 30,
        milestone_due_days: int = 14,
    ):
        super().__init__(session, clock)
        self._number_prefix = number_prefix
        self._payment_terms_days = payment_terms_days
        self._milestone_due_days = milestone_due_days
        self._sequences = SequenceService(session)
        self._selector = InvoiceSelector(session)

    # ------------------------------------------------------------------
    # Reads used by write paths
    # ------------------------------------------------------------------

    def get_invoice(self, invoice_id: UUID, lock: bool = False) -> Invoice:
        """
        Raises:
            InvoiceNotFoundError: no such invoice.
        """
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        invoice = self.session.execute(stmt).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def get_invoice_by_payment_intent_id(self, payment_intent_id: str) -> InvoiceView | None:
        return self._selector.get_by_payment_intent_id(payment_intent_id)

    def next_invoice_number(self, issue_date: datetime) -> str:
        period = issue_date.strftime("%Y%m")
        value = self._sequences.next_value(f"invoice:{period}")
        return f"{self._number_prefix}-{period}-{value:06d}"

    # ------------------------------------------------------------------
    # Create / update / delete
    # ------------------------------------------------------------------

    def create_invoice(self, draft: InvoiceDraft, actor_id: UUID | None = None) -> Invoice:
        """Insert a DRAFT invoice."""
        amount = require_positive_amount(draft.amount)

        if self.session.get(Project, draft.project_id) is None:
            raise InvalidReferenceError("project", draft.project_id, INVALID_PROJECT_MESSAGE)
        if draft.milestone_id is not None:
            milestone = self.session.get(Milestone, draft.milestone_id)
            # A milestone is billed only through invoices of its own project
            if milestone is None or milestone.project_id != draft.project_id:
                raise InvalidReferenceError(
                    "milestone", draft.milestone_id, INVALID_MILESTONE_MESSAGE
                )
        if draft.status is not None and draft.status != InvoiceStatus.DRAFT:
            logger.info(
                "invoice_status_forced_to_draft",
                extra={
                    "requested_status": draft.status.value,
                    "invariant": BillingInvariant.DRAFT_ON_CREATE.value,
                },
            )

        now = self._clock.now()
        issue_date = draft.issue_date or now
        invoice = Invoice(
            project_id=draft.project_id,
            milestone_id=draft.milestone_id,
            quote_id=draft.quote_id,
            invoice_number=self.next_invoice_number(issue_date),
            invoice_type=draft.invoice_type,
            amount=amount,
            description=draft.description,
            status=InvoiceStatus.DRAFT,
            issue_date=issue_date,
            due_date=draft.due_date or issue_date + timedelta(days=self._payment_terms_days),
            stripe_payment_intent_id=draft.stripe_payment_intent_id,
            customer_name=draft.customer_name,
            customer_email=draft.customer_email,
            created_by_id=actor_id,
        )
        try:
            with self._savepoint():
                self.session.add(invoice)
        except IntegrityError as exc:
            raise self._translate_integrity_error(
                exc, draft.project_id, draft.stripe_payment_intent_id
            ) from exc

        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "project_id": str(invoice.project_id),
                "milestone_id": str(invoice.milestone_id) if invoice.milestone_id else None,
                "amount": invoice.amount,
                "invoice_type": invoice.invoice_type.value,
            },
        )
        return invoice

    def _translate_integrity_error(
        self,
        exc: IntegrityError,
        project_id: UUID,
        payment_intent_id: str | None,
    ) -> Exception:
        if payment_intent_id is not None:
            clash = self._selector.get_by_payment_intent_id(payment_intent_id)
            if clash is not None:
                return DuplicatePaymentIntentError(payment_intent_id)
        logger.warning(
            "invoice_integrity_error",
            extra={"project_id": str(project_id), "error": str(exc.orig)},
        )
        return InvalidReferenceError("project", project_id, INVALID_PROJECT_MESSAGE)

    def update_invoice(
        self,
        invoice_id: UUID,
        patch: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> Invoice:
        """
        Apply a partial update.

        An empty patch, or one whose values already match, returns the
        invoice unchanged.  ``status`` is never taken from a patch.
        """
        invoice = self.get_invoice(invoice_id)

        if "status" in patch:
            logger.warning(
                "invoice_patch_status_ignored",
                extra={"invoice_id": str(invoice_id), "requested_status": str(patch["status"])},
            )

        changes: dict[str, Any] = {}
        for field_name, value in patch.items():
            if field_name not in UPDATABLE_FIELDS:
                continue
            if field_name == "amount":
                value = require_positive_amount(value)
            if getattr(invoice, field_name) != value:
                changes[field_name] = value

        if not changes:
            return invoice

        if "amount" in changes and invoice.status != InvoiceStatus.DRAFT:
            raise InvalidAmountError(
                changes["amount"], "amount can only change while the invoice is a draft"
            )

        try:
            with self._savepoint():
                for field_name, value in changes.items():
                    setattr(invoice, field_name, value)
                invoice.updated_by_id = actor_id
        except IntegrityError as exc:
            raise self._translate_integrity_error(
                exc, invoice.project_id, changes.get("stripe_payment_intent_id")
            ) from exc

        logger.info(
            "invoice_updated",
            extra={"invoice_id": str(invoice.id), "fields": sorted(changes)},
        )
        return invoice

    def attach_payment_intent(self, invoice_id: UUID, payment_intent_id: str) -> Invoice:
        """Attach the processor payment intent webhook events will reference."""
        return self.update_invoice(invoice_id, {"stripe_payment_intent_id": payment_intent_id})

    def delete_invoice(self, invoice_id: UUID) -> None:
        """
        Raises:
            InvoiceHasPaymentsError: payments exist; nothing is deleted.
        """
        invoice = self.get_invoice(invoice_id, lock=True)
        count = self._selector.payment_count(invoice_id)
        if count:
            logger.warning(
                "invoice_delete_refused",
                extra={"invoice_id": str(invoice_id), "payment_count": count},
            )
            raise InvoiceHasPaymentsError(invoice_id, count)
        self.session.delete(invoice)
        self.session.flush()
        logger.info(
            "invoice_deleted",
            extra={"invoice_id": str(invoice_id), "invoice_number": invoice.invoice_number},
        )

    # ------------------------------------------------------------------
    # Explicit status actions
    # ------------------------------------------------------------------

    def send_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id, lock=True)
        transition_invoice(invoice, InvoiceStatus.SENT, self._clock.now(), "send")
        self.session.flush()
        return invoice

    def cancel_invoice(self, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id, lock=True)
        transition_invoice(invoice, InvoiceStatus.CANCELLED, self._clock.now(), "cancel")
        self.session.flush()
        return invoice

    def mark_overdue(self, invoice_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id, lock=True)
        transition_invoice(invoice, InvoiceStatus.OVERDUE, self._clock.now(), "mark_overdue")
        self.session.flush()
        return invoice

    def mark_overdue_invoices(self, as_of: datetime | None = None) -> list[UUID]:
        """Move every SENT invoice whose due date has passed to OVERDUE."""
        as_of = as_of or self._clock.now()
        invoices = self.session.scalars(
            select(Invoice)
            .where(Invoice.status == InvoiceStatus.SENT, Invoice.due_date < as_of)
            .with_for_update()
        ).all()
        moved = []
        for invoice in invoices:
            transition_invoice(invoice, InvoiceStatus.OVERDUE, as_of, "mark_overdue")
            moved.append(invoice.id)
        self.session.flush()
        logger.info("overdue_sweep_completed", extra={"as_of": as_of, "count": len(moved)})
        return moved

    # ------------------------------------------------------------------
    # Milestone invoices
    # ------------------------------------------------------------------

    def create_draft_invoice_for_milestone(
        self,
        milestone_id: UUID,
        actor_id: UUID | None = None,
    ) -> Invoice:
        """
        Draft an invoice for ``total_budget * billing_percentage / 100``.

        Raises:
            MilestoneNotBillableError: milestone is not billable.
            MilestoneStateError: milestone already has a live invoice.
            InvalidAmountError: project budget yields a zero amount.
        """
        milestone = self.session.get(Milestone, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(milestone_id)
        if not milestone.is_billable or milestone.billing_percentage <= ZERO:
            raise MilestoneNotBillableError(milestone_id)

        existing = self.session.scalars(
            select(Invoice).where(
                Invoice.milestone_id == milestone_id,
                Invoice.status != InvoiceStatus.CANCELLED,
            )
        ).first()
        if existing is not None:
            raise MilestoneStateError(
                milestone_id,
                milestone.status.value,
                f"Milestone already has invoice {existing.invoice_number}",
            )

        project = self.session.get(Project, milestone.project_id)
        if project is None:
            raise InvalidReferenceError("project", milestone.project_id, INVALID_PROJECT_MESSAGE)
        amount = round_amount(project.total_budget * milestone.billing_percentage / HUNDRED)
        if amount <= ZERO:
            raise InvalidAmountError(amount, "project budget is not set")

        now = self._clock.now()
        return self.create_invoice(
            InvoiceDraft(
                project_id=project.id,
                amount=amount,
                invoice_type=InvoiceType.MILESTONE,
                description=(
                    f"Milestone payment: {milestone.title} "
                    f"({milestone.billing_percentage:.2f}% of project total)"
                ),
                issue_date=now,
                due_date=now + timedelta(days=self._milestone_due_days),
                milestone_id=milestone.id,
            ),
            actor_id=actor_id,
        )
