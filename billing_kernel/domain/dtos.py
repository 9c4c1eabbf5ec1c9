"""
Data Transfer Objects returned by billing selectors and services.

Frozen dataclasses with no ORM attachment, so they can cross the session
boundary (into HTTP responses, logs, tests) without lazy-load surprises.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from billing_kernel.domain.billing_ledger import LedgerTotals
from billing_kernel.domain.statuses import (
    BillingType,
    InvoiceStatus,
    InvoiceType,
    MilestoneCategory,
    MilestoneStatus,
    TaskStatus,
)


@dataclass(frozen=True)
class TaskView:
    id: UUID
    project_id: UUID
    title: str
    status: TaskStatus
    is_billable: bool
    billing_type: BillingType
    billing_percentage: Decimal
    milestone_id: UUID | None
    due_date: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class MilestoneView:
    id: UUID
    project_id: UUID
    title: str
    category: MilestoneCategory
    status: MilestoneStatus
    is_billable: bool
    billing_percentage: Decimal
    task_id: UUID | None
    planned_date: datetime
    completed_at: datetime | None
    billed_at: datetime | None


@dataclass(frozen=True)
class BillableWorkItems:
    """Billable tasks (percentage type) and billable milestones of a project."""

    project_id: UUID
    tasks: tuple[TaskView, ...]
    milestones: tuple[MilestoneView, ...]


@dataclass(frozen=True)
class BillingSummary:
    """Ledger totals plus the items they were computed from."""

    project_id: UUID
    totals: LedgerTotals
    items: BillableWorkItems


@dataclass(frozen=True)
class PaymentView:
    id: UUID
    invoice_id: UUID
    amount: Decimal
    payment_date: datetime
    payment_method: str
    recorded_by: UUID | None
    processor_reference: str | None
    notes: str | None
    recorded_at: datetime


@dataclass(frozen=True)
class InvoiceView:
    id: UUID
    project_id: UUID
    milestone_id: UUID | None
    quote_id: UUID | None
    invoice_number: str
    invoice_type: InvoiceType
    amount: Decimal
    description: str | None
    status: InvoiceStatus
    issue_date: datetime
    due_date: datetime
    stripe_payment_intent_id: str | None
    customer_name: str | None
    customer_email: str | None
    sent_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(frozen=True)
class InvoiceWithPayments:
    invoice: InvoiceView
    payments: tuple[PaymentView, ...]
    total_paid: Decimal
    balance_due: Decimal
