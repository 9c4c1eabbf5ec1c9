"""
Module: billing_kernel.models.payment
Responsibility: ORM persistence for payments received against an invoice.
Architecture position: Kernel > Models.

Invariants enforced:
    - Append-only: ORM UPDATE and DELETE of a Payment raise
      ImmutabilityViolationError.  Corrections are new rows, never edits.
    - amount > 0 (PaymentRecorder).
    - processor_reference is unique when present (uq_payment_processor_reference),
      so a processor payment can be recorded at most once even when two
      redeliveries of the same event race.

Audit relevance:
    The full payment set of an invoice is the sole input to its paid /
    partially_paid status.  No running balance is stored on the invoice.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, UUIDString
from billing_kernel.db.types import Amount
from billing_kernel.exceptions import ImmutabilityViolationError


class Payment(Base):
    """A single payment applied to an invoice."""

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint("processor_reference", name="uq_payment_processor_reference"),
        Index("idx_payment_invoice", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("invoices.id"),
        nullable=False,
    )

    amount: Mapped[Amount] = mapped_column(nullable=False)

    payment_date: Mapped[datetime] = mapped_column(nullable=False)

    # e.g. "stripe", "check", "bank_transfer", "cash"
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)

    # Actor who recorded it; None for processor-driven payments
    recorded_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # External id (payment intent, check number) used for deduplication
    processor_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Payment {self.amount} on {self.invoice_id}>"


@event.listens_for(Payment, "before_update")
def prevent_payment_update(mapper, connection, target):
    """Payments are append-only."""
    raise ImmutabilityViolationError(
        "Payment", str(target.id), "payments are append-only and cannot be modified"
    )


@event.listens_for(Payment, "before_delete")
def prevent_payment_delete(mapper, connection, target):
    """Payments are append-only."""
    raise ImmutabilityViolationError(
        "Payment", str(target.id), "payments are append-only and cannot be deleted"
    )
