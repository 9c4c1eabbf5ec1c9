"""
Billing Kernel Invariants Contract.

These invariants are structural law for the billing kernel. No
configuration value or API caller may switch them off.

This module exists solely to declare them explicitly. Enforcement is
distributed across the allocation validator, invoice ledger, payment
recorder, webhook reconciler, and the ORM immutability listeners.
"""

from enum import Enum, unique


@unique
class BillingInvariant(str, Enum):
    """Non-configurable invariants enforced by the billing kernel."""

    PERCENTAGE_BUDGET = "percentage_budget"
    """Billable tasks plus billable milestones of a project never claim
    more than 100%. Enforced by BillingAllocationValidator under a
    project row lock, before any write that sets a percentage."""

    DRAFT_ON_CREATE = "draft_on_create"
    """Every invoice is created in draft status with a positive amount.
    Enforced by InvoiceLedger.create_invoice."""

    STATUS_MONOTONICITY = "status_monotonicity"
    """Invoice status never moves backwards in draft < sent <
    partially_paid < paid, except through explicit cancellation.
    Enforced by the invoice workflow transition table."""

    PAYMENT_APPEND_ONLY = "payment_append_only"
    """Payments are never updated or deleted. Enforced by ORM listeners
    on the Payment model."""

    IDEMPOTENT_RECONCILIATION = "idempotent_reconciliation"
    """Replaying a payment-processor event has no effect beyond the
    first application. Enforced by WebhookReconciler and unique
    indexes on processor event ids and payment references."""

    TASK_MILESTONE_SYNC = "task_milestone_sync"
    """A milestone linked to a task carries the task's billing
    percentage. Enforced by MilestoneManager.sync_billing_percentage."""


# All invariants as a frozenset for programmatic checks.
ALL_BILLING_INVARIANTS: frozenset[BillingInvariant] = frozenset(BillingInvariant)

# The kernel package may not import from these packages.
# This is enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "billing_config",
    "billing_api",
)
