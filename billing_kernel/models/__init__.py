"""ORM models for the billing kernel."""

from billing_kernel.models.invoice import Invoice
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.payment import Payment
from billing_kernel.models.processor_event import ProcessorEvent
from billing_kernel.models.project import Project
from billing_kernel.models.sequence_counter import SequenceCounter
from billing_kernel.models.task import Task

__all__ = [
    "Invoice",
    "Milestone",
    "Payment",
    "ProcessorEvent",
    "Project",
    "SequenceCounter",
    "Task",
]
