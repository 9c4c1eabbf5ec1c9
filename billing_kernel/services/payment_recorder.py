"""
PaymentRecorder -- append a payment and re-derive invoice status.

Responsibility:
    Records one payment against an invoice and recomputes the invoice's
    status from its complete payment set, as a single unit of work.

Architecture position:
    Kernel > Services.  Called by the payment API route (manual payments) and
    by WebhookReconciler (processor-confirmed payments).

Invariants enforced:
    PAYMENT_APPEND_ONLY -- payments are inserted, never edited.
    STATUS_MONOTONICITY -- the new status comes from derive_payment_status
        and is written through transition_invoice; a smaller or later view of
        the payments never moves an invoice backwards.

    The invoice row is locked before the insert, so two concurrent payments
    on one invoice are applied one after the other and the second recompute
    sees the first payment.

Failure modes:
    - InvoiceNotFoundError: unknown invoice.
    - InvalidAmountError: amount not a decimal > 0.
    - InvalidReferenceError: FK failure on insert (translated).
    - Any failure after the insert propagates; the caller's rollback removes
      the inserted payment together with everything else in the transaction.

Audit relevance:
    ``payment_recorded`` is logged with the amount, totals and both statuses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.invoice_workflow import derive_payment_status
from billing_kernel.domain.statuses import InvoiceStatus
from billing_kernel.exceptions import DuplicatePaymentReferenceError, InvalidReferenceError
from billing_kernel.invariants import BillingInvariant
from billing_kernel.logging_config import get_logger
from billing_kernel.models.payment import Payment
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.services.base import BaseService
from billing_kernel.services.invoice_ledger import (
    InvoiceLedger,
    require_positive_amount,
    transition_invoice,
)

logger = get_logger("services.payment_recorder")


@dataclass(frozen=True)
class PaymentResult:
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    total_paid: Decimal
    previous_status: InvoiceStatus
    new_status: InvoiceStatus

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status

    @property
    def became_paid(self) -> bool:
        return self.status_changed and self.new_status == InvoiceStatus.PAID


class PaymentRecorder(BaseService):
    """
    Records payments.

    Contract:
        ``record_payment`` inserts exactly one Payment and leaves the invoice
        status consistent with the sum of all its payments.  The caller
        commits.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._ledger = InvoiceLedger(session, clock)
        self._selector = InvoiceSelector(session)

    def record_payment(
        self,
        invoice_id: UUID,
        amount: object,
        payment_method: str,
        payment_date: datetime | None = None,
        recorded_by: UUID | None = None,
        processor_reference: str | None = None,
        notes: str | None = None,
    ) -> PaymentResult:
        value = require_positive_amount(amount)
        invoice = self._ledger.get_invoice(invoice_id, lock=True)
        now = self._clock.now()

        payment = Payment(
            invoice_id=invoice.id,
            amount=value,
            payment_date=payment_date or now,
            payment_method=payment_method,
            recorded_by=recorded_by,
            processor_reference=processor_reference,
            notes=notes,
            recorded_at=now,
        )
        try:
            with self._savepoint():
                self.session.add(payment)
        except IntegrityError as exc:
            if (
                processor_reference is not None
                and self._selector.paid_under_reference(processor_reference) > 0
            ):
                raise DuplicatePaymentReferenceError(processor_reference) from exc
            logger.warning(
                "payment_integrity_error",
                extra={"invoice_id": str(invoice_id), "error": str(exc.orig)},
            )
            raise InvalidReferenceError(
                "invoice", invoice_id, "Invalid invoice or recording user for payment."
            ) from exc

        total_paid = self._selector.total_paid(invoice.id)
        previous = invoice.status
        new_status = derive_payment_status(previous, total_paid, invoice.amount)
        if new_status != previous:
            transition_invoice(invoice, new_status, now, "apply_payment")
        elif previous == InvoiceStatus.CANCELLED:
            logger.warning(
                "payment_on_cancelled_invoice",
                extra={"invoice_id": str(invoice.id), "amount": value},
            )
        self.session.flush()

        logger.info(
            "payment_recorded",
            extra={
                "invoice_id": str(invoice.id),
                "payment_id": str(payment.id),
                "amount": value,
                "total_paid": total_paid,
                "invoice_amount": invoice.amount,
                "previous_status": previous.value,
                "new_status": new_status.value,
                "invariant": BillingInvariant.STATUS_MONOTONICITY.value,
            },
        )
        return PaymentResult(
            payment_id=payment.id,
            invoice_id=invoice.id,
            amount=value,
            total_paid=total_paid,
            previous_status=previous,
            new_status=new_status,
        )
