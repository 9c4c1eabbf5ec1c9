"""
Module: billing_kernel.models.processor_event
Responsibility: Durable record of every payment-processor event the webhook
    reconciler has handled, including failures and events that matched no
    invoice.
Architecture position: Kernel > Models.

Invariants enforced:
    - event_id is unique (uq_processor_event_id): the first idempotency guard
      against at-least-once webhook delivery.
    - Rows are append-only once written.

Audit relevance:
    A failed payment is never silently discarded: the row written here (plus
    the structured log line) is the human-visible record support staff use
    for reconciliation.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Index, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, UUIDString
from billing_kernel.db.types import PayloadHash, status_enum
from billing_kernel.domain.statuses import ProcessorEventOutcome
from billing_kernel.exceptions import ImmutabilityViolationError


class ProcessorEvent(Base):
    """One handled payment-processor event and what the reconciler did with it."""

    __tablename__ = "processor_events"

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_processor_event_id"),
        Index("idx_processor_event_intent", "payment_intent_id"),
    )

    # Processor-assigned id (e.g. "evt_...")
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payload_hash: Mapped[PayloadHash] = mapped_column(nullable=False)

    outcome: Mapped[ProcessorEventOutcome] = mapped_column(
        status_enum(ProcessorEventOutcome),
        nullable=False,
    )

    invoice_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessorEvent {self.event_id}: {self.outcome.value}>"


@event.listens_for(ProcessorEvent, "before_update")
def prevent_processor_event_update(mapper, connection, target):
    """Processor event records are append-only."""
    raise ImmutabilityViolationError(
        "ProcessorEvent", target.event_id, "processor event records cannot be modified"
    )
