"""
billing_kernel.services -- write-path services.

Responsibility:
    Every operation that changes billing state.  Services share the caller's
    Session, flush but never commit, and raise typed exceptions from
    billing_kernel.exceptions.

Architecture position:
    Kernel > Services.  Composed by billing_api routes and by tests.
"""

from billing_kernel.services.allocation_validator import BillingAllocationValidator
from billing_kernel.services.invoice_ledger import InvoiceDraft, InvoiceLedger
from billing_kernel.services.milestone_manager import MilestoneManager
from billing_kernel.services.payment_recorder import PaymentRecorder, PaymentResult
from billing_kernel.services.sequence_service import SequenceService
from billing_kernel.services.webhook_reconciler import ReconciliationResult, WebhookReconciler
from billing_kernel.services.work_item_service import (
    MilestoneDraft,
    TaskCompletion,
    TaskDraft,
    WorkItemService,
)

__all__ = [
    "BillingAllocationValidator",
    "InvoiceDraft",
    "InvoiceLedger",
    "MilestoneDraft",
    "MilestoneManager",
    "PaymentRecorder",
    "PaymentResult",
    "ReconciliationResult",
    "SequenceService",
    "TaskCompletion",
    "TaskDraft",
    "WebhookReconciler",
    "WorkItemService",
]
