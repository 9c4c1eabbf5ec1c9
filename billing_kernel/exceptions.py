"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (HTTP handlers, the webhook endpoint, batch jobs) must react to
billing failures precisely: a percentage overflow is shown to the user
verbatim, a missing invoice is a 404, a delete with payments is a 409, and
only a store outage should make the payment processor redeliver an event.

Every exception therefore has:
  1. A TYPED class (catch by type, not by message)
  2. A CODE attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- BillingValidationError                      (HTTP 400)
    |   +-- BillingPercentageExceededError
    |   +-- InvalidPercentageError
    |   +-- InvalidAmountError
    |   +-- InvalidReferenceError
    |
    +-- BillingStateError                           (HTTP 400)
    |   +-- TaskNotBillableError
    |   +-- MilestoneNotBillableError
    |   +-- MilestoneStateError
    |
    +-- EntityNotFoundError                         (HTTP 404)
    |   +-- ProjectNotFoundError
    |   +-- TaskNotFoundError
    |   +-- MilestoneNotFoundError
    |   +-- InvoiceNotFoundError
    |
    +-- BillingConflictError                        (HTTP 409)
    |   +-- InvoiceHasPaymentsError
    |   +-- MilestoneLockedError
    |   +-- DuplicatePaymentIntentError
    |   +-- DuplicatePaymentReferenceError
    |   +-- InvalidInvoiceTransitionError
    |   +-- ImmutabilityViolationError
    |   +-- TransactionConflictError
    |
    +-- StoreUnavailableError                       (HTTP 503)
    |
    +-- WebhookError
        +-- WebhookSignatureError                   (HTTP 400)
        +-- InvalidWebhookPayloadError              (HTTP 400)
        +-- ReconciliationRetryableError            (HTTP 503)

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category    | Code                           | When Raised
------------|--------------------------------|-----------------------------------
Validation  | BILLING_PERCENTAGE_EXCEEDED    | Allocation would pass 100%
            | INVALID_PERCENTAGE             | Percentage outside 0-100
            | INVALID_AMOUNT                 | Amount not positive / not decimal
            | INVALID_REFERENCE              | FK target missing (project, ...)
------------|--------------------------------|-----------------------------------
State       | TASK_NOT_BILLABLE              | Billing op on non-billable task
            | MILESTONE_NOT_BILLABLE         | Billing op on non-billable milestone
            | MILESTONE_STATE                | Milestone not in required state
------------|--------------------------------|-----------------------------------
Not found   | PROJECT_NOT_FOUND              |
            | TASK_NOT_FOUND                 |
            | MILESTONE_NOT_FOUND            |
            | INVOICE_NOT_FOUND              |
------------|--------------------------------|-----------------------------------
Conflict    | INVOICE_HAS_PAYMENTS           | Delete invoice with payments
            | MILESTONE_LOCKED               | Delete completed/billed milestone
            | DUPLICATE_PAYMENT_INTENT       | Payment intent already attached
            | DUPLICATE_PAYMENT_REFERENCE    | Processor payment already recorded
            | INVALID_INVOICE_TRANSITION     | Transition not in workflow table
            | IMMUTABILITY_VIOLATION         | Update/delete of append-only row
            | TRANSACTION_CONFLICT           | Unique violation at commit
------------|--------------------------------|-----------------------------------
Store       | STORE_UNAVAILABLE              | Commit failed; retry the request
------------|--------------------------------|-----------------------------------
Webhook     | WEBHOOK_SIGNATURE_INVALID      | Signature missing or wrong
            | WEBHOOK_PAYLOAD_INVALID        | Signed payload lacks required data
            | RECONCILIATION_RETRYABLE       | Transient store failure
"""

from decimal import Decimal
from uuid import UUID


class BillingKernelError(Exception):
    """Base exception for all billing kernel errors."""

    code: str = "BILLING_KERNEL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# Validation exceptions


class BillingValidationError(BillingKernelError):
    """Input rejected before any write."""

    code: str = "VALIDATION_FAILED"


class BillingPercentageExceededError(BillingValidationError):
    """
    Proposed billing percentage would push the project past 100%.

    ``current_total`` is the project's allocated total as stored today,
    ``remaining`` is the unallocated headroom, and ``max_allowed`` is the
    largest value the item being validated may take.
    """

    code: str = "BILLING_PERCENTAGE_EXCEEDED"

    def __init__(
        self,
        project_id: UUID | str,
        proposed: Decimal,
        current_total: Decimal,
        remaining: Decimal,
        max_allowed: Decimal,
        cap: Decimal = Decimal("100"),
    ):
        self.project_id = str(project_id)
        self.proposed = proposed
        self.current_total = current_total
        self.remaining = remaining
        self.max_allowed = max_allowed
        self.cap = cap
        super().__init__(
            f"Total billing percentage would exceed {cap:.0f}%. "
            f"Current total: {current_total:.2f}%, "
            f"remaining: {remaining:.2f}%. "
            f"Please reduce the percentage to {max_allowed:.2f}% or less."
        )


class InvalidPercentageError(BillingValidationError):
    """Billing percentage is outside 0-100 or not a decimal value."""

    code: str = "INVALID_PERCENTAGE"

    def __init__(self, value: object, reason: str = "must be between 0 and 100"):
        self.value = str(value)
        self.reason = reason
        super().__init__(f"Invalid billing percentage {value!s}: {reason}")


class InvalidAmountError(BillingValidationError):
    """Monetary amount is not positive or not a decimal value."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, value: object, reason: str = "must be greater than zero"):
        self.value = str(value)
        self.reason = reason
        super().__init__(f"Invalid amount {value!s}: {reason}")


class InvalidReferenceError(BillingValidationError):
    """A referenced row does not exist (translated FK failure) or belongs to another project."""

    code: str = "INVALID_REFERENCE"

    def __init__(self, entity_type: str, entity_id: UUID | str | None, message: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id) if entity_id is not None else None
        super().__init__(message)


# Billing state exceptions


class BillingStateError(BillingKernelError):
    """Entity is not in a state that permits the requested billing operation."""

    code: str = "BILLING_STATE_ERROR"


class TaskNotBillableError(BillingStateError):
    """Billing operation requested for a task that is not billable."""

    code: str = "TASK_NOT_BILLABLE"

    def __init__(self, task_id: UUID | str, reason: str = "Task is not billable"):
        self.task_id = str(task_id)
        self.reason = reason
        super().__init__(reason)


class MilestoneNotBillableError(BillingStateError):
    """Billing operation requested for a milestone that is not billable."""

    code: str = "MILESTONE_NOT_BILLABLE"

    def __init__(self, milestone_id: UUID | str):
        self.milestone_id = str(milestone_id)
        super().__init__("Milestone is not billable")


class MilestoneStateError(BillingStateError):
    """Milestone status does not allow the requested operation."""

    code: str = "MILESTONE_STATE"

    def __init__(self, milestone_id: UUID | str, status: str, message: str):
        self.milestone_id = str(milestone_id)
        self.status = status
        super().__init__(message)


# Not-found exceptions


class EntityNotFoundError(BillingKernelError):
    """Referenced entity does not exist."""

    code: str = "NOT_FOUND"
    entity_type: str = "entity"

    def __init__(self, entity_id: UUID | str):
        self.entity_id = str(entity_id)
        super().__init__(f"{self.entity_type.capitalize()} not found: {entity_id}")


class ProjectNotFoundError(EntityNotFoundError):
    code: str = "PROJECT_NOT_FOUND"
    entity_type: str = "project"


class TaskNotFoundError(EntityNotFoundError):
    code: str = "TASK_NOT_FOUND"
    entity_type: str = "task"


class MilestoneNotFoundError(EntityNotFoundError):
    code: str = "MILESTONE_NOT_FOUND"
    entity_type: str = "milestone"


class InvoiceNotFoundError(EntityNotFoundError):
    code: str = "INVOICE_NOT_FOUND"
    entity_type: str = "invoice"


# Conflict exceptions


class BillingConflictError(BillingKernelError):
    """Operation conflicts with existing state and is refused, not cascaded."""

    code: str = "CONFLICT"


class InvoiceHasPaymentsError(BillingConflictError):
    """Invoice cannot be deleted because payments are recorded against it."""

    code: str = "INVOICE_HAS_PAYMENTS"

    def __init__(self, invoice_id: UUID | str, payment_count: int):
        self.invoice_id = str(invoice_id)
        self.payment_count = payment_count
        super().__init__(
            f"Invoice {invoice_id} has {payment_count} recorded payment(s) "
            "and cannot be deleted"
        )


class MilestoneLockedError(BillingConflictError):
    """Completed or billed milestones cannot be deleted."""

    code: str = "MILESTONE_LOCKED"

    def __init__(self, milestone_id: UUID | str, status: str):
        self.milestone_id = str(milestone_id)
        self.status = status
        super().__init__(f"Cannot delete a {status} milestone")


class DuplicatePaymentIntentError(BillingConflictError):
    """Payment intent id is already attached to another invoice."""

    code: str = "DUPLICATE_PAYMENT_INTENT"

    def __init__(self, payment_intent_id: str):
        self.payment_intent_id = payment_intent_id
        super().__init__(
            f"Payment intent {payment_intent_id} is already attached to an invoice"
        )


class InvalidInvoiceTransitionError(BillingConflictError):
    """Requested invoice status change is not in the transition table."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_id: UUID | str | None, from_status: str, to_status: str):
        self.invoice_id = str(invoice_id) if invoice_id is not None else None
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invoice cannot move from {from_status} to {to_status}"
        )


class DuplicatePaymentReferenceError(BillingConflictError):
    """A payment with this processor reference is already recorded."""

    code: str = "DUPLICATE_PAYMENT_REFERENCE"

    def __init__(self, processor_reference: str):
        self.processor_reference = processor_reference
        super().__init__(
            f"Payment with reference {processor_reference} is already recorded"
        )


class ImmutabilityViolationError(BillingConflictError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class TransactionConflictError(BillingConflictError):
    """A concurrent transaction committed a conflicting row first."""

    code: str = "TRANSACTION_CONFLICT"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("The request conflicted with a concurrent change; retry it")


# Store exceptions


class StoreUnavailableError(BillingKernelError):
    """The transaction could not be committed; nothing was written."""

    code: str = "STORE_UNAVAILABLE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("The billing store is unavailable; nothing was saved")


# Webhook exceptions


class WebhookError(BillingKernelError):
    """Base class for payment-processor webhook errors."""

    code: str = "WEBHOOK_ERROR"


class WebhookSignatureError(WebhookError):
    """Webhook payload signature is missing, malformed, or wrong."""

    code: str = "WEBHOOK_SIGNATURE_INVALID"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook signature verification failed: {reason}")


class ReconciliationRetryableError(WebhookError):
    """
    Reconciliation hit a transient store failure.

    The only webhook failure that should make the payment processor
    redeliver the event.
    """

    code: str = "RECONCILIATION_RETRYABLE"

    def __init__(self, event_id: str, reason: str):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Reconciliation of event {event_id} failed transiently: {reason}")


class InvalidWebhookPayloadError(WebhookError):
    """Signed payload is missing a field the reconciler requires."""

    code: str = "WEBHOOK_PAYLOAD_INVALID"

    def __init__(self, event_id: str | None, reason: str):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Invalid webhook payload {event_id or '<unknown>'}: {reason}")
