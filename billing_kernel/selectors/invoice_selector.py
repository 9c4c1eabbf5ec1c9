"""
Module: billing_kernel.selectors.invoice_selector
Responsibility: Read-only invoice and payment queries: single invoice with its
    payment history, lookups by payment intent, per-project and global lists,
    and payment sums used for status derivation.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - total_paid is always summed from the payment rows themselves; no stored
      balance exists anywhere.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from billing_kernel.db.types import ZERO
from billing_kernel.domain.dtos import InvoiceView, InvoiceWithPayments, PaymentView
from billing_kernel.domain.statuses import InvoiceStatus
from billing_kernel.exceptions import InvoiceNotFoundError
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.payment import Payment
from billing_kernel.selectors.base import BaseSelector


def invoice_view(invoice: Invoice) -> InvoiceView:
    return InvoiceView(
        id=invoice.id,
        project_id=invoice.project_id,
        milestone_id=invoice.milestone_id,
        quote_id=invoice.quote_id,
        invoice_number=invoice.invoice_number,
        invoice_type=invoice.invoice_type,
        amount=invoice.amount,
        description=invoice.description,
        status=invoice.status,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        stripe_payment_intent_id=invoice.stripe_payment_intent_id,
        customer_name=invoice.customer_name,
        customer_email=invoice.customer_email,
        sent_at=invoice.sent_at,
        paid_at=invoice.paid_at,
        cancelled_at=invoice.cancelled_at,
        created_at=invoice.created_at,
        updated_at=invoice.updated_at,
    )


def payment_view(payment: Payment) -> PaymentView:
    return PaymentView(
        id=payment.id,
        invoice_id=payment.invoice_id,
        amount=payment.amount,
        payment_date=payment.payment_date,
        payment_method=payment.payment_method,
        recorded_by=payment.recorded_by,
        processor_reference=payment.processor_reference,
        notes=payment.notes,
        recorded_at=payment.recorded_at,
    )


class InvoiceSelector(BaseSelector):
    """Invoice and payment reads."""

    def get(self, invoice_id: UUID) -> InvoiceView:
        """
        Raises:
            InvoiceNotFoundError: no invoice with this id.
        """
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice_view(invoice)

    def payments_for(self, invoice_id: UUID) -> list[Payment]:
        """Payments in the order they were durably recorded."""
        return list(
            self.session.scalars(
                select(Payment)
                .where(Payment.invoice_id == invoice_id)
                .order_by(Payment.recorded_at, Payment.payment_date, Payment.id)
            )
        )

    def total_paid(self, invoice_id: UUID) -> Decimal:
        return sum((p.amount for p in self.payments_for(invoice_id)), ZERO)

    def payment_count(self, invoice_id: UUID) -> int:
        return self.session.scalar(
            select(func.count(Payment.id)).where(Payment.invoice_id == invoice_id)
        ) or 0

    def paid_under_reference(self, processor_reference: str) -> Decimal:
        """Sum already recorded for one processor reference (payment intent)."""
        amounts = self.session.scalars(
            select(Payment.amount).where(Payment.processor_reference == processor_reference)
        )
        return sum(amounts, ZERO)

    def get_with_payments(self, invoice_id: UUID) -> InvoiceWithPayments:
        invoice = self.get(invoice_id)
        payments = tuple(payment_view(p) for p in self.payments_for(invoice_id))
        total = sum((p.amount for p in payments), ZERO)
        return InvoiceWithPayments(
            invoice=invoice,
            payments=payments,
            total_paid=total,
            balance_due=max(ZERO, invoice.amount - total),
        )

    def get_by_payment_intent_id(self, payment_intent_id: str) -> InvoiceView | None:
        invoice = self.session.scalars(
            select(Invoice).where(Invoice.stripe_payment_intent_id == payment_intent_id)
        ).one_or_none()
        return invoice_view(invoice) if invoice is not None else None

    def list_for_project(self, project_id: UUID) -> list[InvoiceView]:
        rows = self.session.scalars(
            select(Invoice)
            .where(Invoice.project_id == project_id)
            .order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc())
        )
        return [invoice_view(i) for i in rows]

    def list_all(self, status: InvoiceStatus | None = None) -> list[InvoiceView]:
        stmt = select(Invoice).order_by(Invoice.issue_date.desc(), Invoice.invoice_number.desc())
        if status is not None:
            stmt = stmt.where(Invoice.status == status)
        return [invoice_view(i) for i in self.session.scalars(stmt)]
