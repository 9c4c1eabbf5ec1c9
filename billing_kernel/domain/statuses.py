"""
Closed enumerations for billing entity state.

Responsibility:
    Single source of truth for every status and category value stored by
    the billing models.  ORM columns, domain logic, and API schemas all use
    these enums; loosely-typed status strings are never compared directly.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Imported by models/ for column types.
"""

from enum import Enum


class ProjectStatus(str, Enum):
    """Project lifecycle. Owned by an external workflow except planning -> in_progress."""

    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BillingType(str, Enum):
    """Only PERCENTAGE tasks participate in the percentage ledger."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BILLED = "billed"
    DELAYED = "delayed"


class MilestoneCategory(str, Enum):
    GENERAL = "general"
    BILLABLE_TASK = "billable_task"
    TASK_CONVERSION = "task_conversion"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle. Transitions live in domain.invoice_workflow."""

    DRAFT = "draft"
    SENT = "sent"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class InvoiceType(str, Enum):
    DOWN_PAYMENT = "down_payment"
    MILESTONE = "milestone"
    FINAL = "final"
    CHANGE_ORDER = "change_order"
    REGULAR = "regular"


class ProcessorEventOutcome(str, Enum):
    """What the webhook reconciler did with a payment-processor event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    FAILURE_RECORDED = "failure_recorded"
    IGNORED = "ignored"
    REJECTED = "rejected"
