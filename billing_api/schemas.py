"""
Request and response models for the billing HTTP API.

Monetary amounts and percentages are decimals on the wire: requests accept
strings or integers and reject JSON floats, responses always carry strings.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from billing_kernel.domain.statuses import (
    BillingType,
    InvoiceStatus,
    InvoiceType,
    MilestoneCategory,
    MilestoneStatus,
    ProcessorEventOutcome,
    TaskStatus,
)


def _reject_float(value: Any) -> Any:
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError("decimal values must be sent as strings or integers")
    return value


DecimalIn = Annotated[Decimal, BeforeValidator(_reject_float)]


class _Out(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class InvoiceCreate(BaseModel):
    amount: DecimalIn
    invoice_type: InvoiceType = InvoiceType.REGULAR
    description: str | None = None
    issue_date: datetime | None = None
    due_date: datetime | None = None
    milestone_id: UUID | None = None
    quote_id: UUID | None = None
    stripe_payment_intent_id: str | None = Field(default=None, max_length=255)
    customer_name: str | None = None
    customer_email: str | None = None
    # Accepted for compatibility; new invoices are always drafts
    status: InvoiceStatus | None = None


class InvoiceUpdate(BaseModel):
    amount: DecimalIn | None = None
    invoice_type: InvoiceType | None = None
    description: str | None = None
    due_date: datetime | None = None
    quote_id: UUID | None = None
    stripe_payment_intent_id: str | None = Field(default=None, max_length=255)
    customer_name: str | None = None
    customer_email: str | None = None
    status: InvoiceStatus | None = None


class InvoiceOut(_Out):
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


class PaymentCreate(BaseModel):
    amount: DecimalIn
    payment_method: str = Field(default="manual", min_length=1, max_length=50)
    payment_date: datetime | None = None
    processor_reference: str | None = Field(default=None, max_length=255)
    notes: str | None = None


class PaymentOut(_Out):
    id: UUID
    invoice_id: UUID
    amount: Decimal
    payment_date: datetime
    payment_method: str
    recorded_by: UUID | None
    processor_reference: str | None
    notes: str | None
    recorded_at: datetime


class PaymentRecorded(_Out):
    payment_id: UUID
    invoice_id: UUID
    amount: Decimal
    total_paid: Decimal
    previous_status: InvoiceStatus
    new_status: InvoiceStatus


class InvoiceDetailOut(_Out):
    invoice: InvoiceOut
    payments: list[PaymentOut]
    total_paid: Decimal
    balance_due: Decimal


class OverdueSweep(BaseModel):
    as_of: datetime | None = None


class OverdueSweepOut(BaseModel):
    as_of: datetime
    marked_overdue: list[UUID]


# ---------------------------------------------------------------------------
# Tasks and milestones
# ---------------------------------------------------------------------------


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    status: TaskStatus = TaskStatus.TODO
    due_date: datetime | None = None
    is_billable: bool = False
    billing_type: BillingType = BillingType.PERCENTAGE
    billing_percentage: DecimalIn | None = None


class TaskUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    status: TaskStatus | None = None
    due_date: datetime | None = None
    is_billable: bool | None = None
    billing_type: BillingType | None = None
    billing_percentage: DecimalIn | None = None


class TaskOut(_Out):
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


class MilestoneCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    planned_date: datetime
    description: str | None = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    is_billable: bool = False
    billing_percentage: DecimalIn | None = None


class MilestoneUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    planned_date: datetime | None = None
    status: MilestoneStatus | None = None
    is_billable: bool | None = None
    billing_percentage: DecimalIn | None = None


class MilestoneOut(_Out):
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


class TaskCompletionOut(BaseModel):
    task: TaskOut
    milestone: MilestoneOut | None
    invoice: InvoiceOut | None


class LedgerTotalsOut(_Out):
    from_tasks: Decimal
    from_milestones: Decimal
    grand_total: Decimal
    remaining: Decimal


class BillingSummaryOut(BaseModel):
    project_id: UUID
    totals: LedgerTotalsOut
    tasks: list[TaskOut]
    milestones: list[MilestoneOut]


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookAck(BaseModel):
    received: bool = True
    event_id: str
    outcome: ProcessorEventOutcome
