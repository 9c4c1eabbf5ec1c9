"""
Module: billing_kernel.models.invoice
Responsibility: ORM persistence for client invoices.
Architecture position: Kernel > Models.

Invariants enforced:
    - Every invoice is inserted in DRAFT status with a positive amount
      (InvoiceLedger.create_invoice).
    - invoice_number is unique (uq_invoice_number).
    - stripe_payment_intent_id is unique when present (uq_invoice_payment_intent);
      it is the key the webhook reconciler maps processor events through.
    - Status changes go through domain.invoice_workflow only.

Failure modes:
    - IntegrityError on an unknown project_id (translated to
      InvalidReferenceError by the ledger).
    - IntegrityError on a duplicate payment intent id (translated to
      DuplicatePaymentIntentError).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import Amount, status_enum
from billing_kernel.domain.statuses import InvoiceStatus, InvoiceType


class Invoice(TrackedBase):
    """Client invoice against a project, optionally for one milestone."""

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("invoice_number", name="uq_invoice_number"),
        UniqueConstraint("stripe_payment_intent_id", name="uq_invoice_payment_intent"),
        Index("idx_invoice_project", "project_id"),
        Index("idx_invoice_status_due", "status", "due_date"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("projects.id"),
        nullable=False,
    )

    milestone_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("milestones.id"),
        nullable=True,
    )

    # Quotes are owned by the upstream quote workflow; no FK
    quote_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)

    invoice_type: Mapped[InvoiceType] = mapped_column(
        status_enum(InvoiceType),
        nullable=False,
        default=InvoiceType.REGULAR,
    )

    amount: Mapped[Amount] = mapped_column(nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[InvoiceStatus] = mapped_column(
        status_enum(InvoiceStatus),
        nullable=False,
        default=InvoiceStatus.DRAFT,
    )

    issue_date: Mapped[datetime] = mapped_column(nullable=False)

    due_date: Mapped[datetime] = mapped_column(nullable=False)

    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number}: {self.amount} {self.status.value}>"
