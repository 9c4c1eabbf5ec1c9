"""
Reconciliation -- pure decision function for payment-processor events.

Responsibility:
    Map (current invoice state, processor event) to a decision and the list
    of side effects that applying it implies.  WebhookReconciler performs
    the effects; this module only decides.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - IDEMPOTENT_RECONCILIATION: ``decide`` checks whether the invoice already
      satisfies the event before asking for a payment.  After a confirmed
      event is applied, deciding the same event again yields SKIP_DUPLICATE,
      so redelivery has no further effect.

Payload mapping (``parse_processor_event``):
    payment_intent.succeeded       -> CONFIRMED, amount_received (minor units)
    payment_intent.payment_failed  -> FAILED, last_payment_error.message
    anything else                  -> None (acknowledged and ignored)
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from billing_kernel.db.types import ZERO, round_amount
from billing_kernel.domain.invoice_workflow import derive_payment_status
from billing_kernel.domain.statuses import InvoiceStatus
from billing_kernel.exceptions import InvalidWebhookPayloadError

CONFIRMED_EVENT_TYPES = frozenset({"payment_intent.succeeded"})
FAILED_EVENT_TYPES = frozenset({"payment_intent.payment_failed"})

# Processor amounts arrive in minor units (cents)
MINOR_UNITS_PER_MAJOR = Decimal("100")


class PaymentEventKind(str, Enum):
    CONFIRMED = "payment_confirmed"
    FAILED = "payment_failed"


@dataclass(frozen=True)
class PaymentEvent:
    """A processor event the reconciler understands."""

    event_id: str
    event_type: str
    kind: PaymentEventKind
    payment_intent_id: str
    amount: Decimal | None = None
    reason: str | None = None
    # Invoice id the payer's checkout attached as metadata, if any
    invoice_hint: UUID | None = None


@dataclass(frozen=True)
class InvoiceSnapshot:
    """The invoice state a decision is made against."""

    invoice_id: UUID
    project_id: UUID
    milestone_id: UUID | None
    status: InvoiceStatus
    amount: Decimal
    total_paid: Decimal
    # Sum already recorded under this event's payment intent
    reference_paid: Decimal = ZERO


class ReconciliationAction(str, Enum):
    IGNORE_UNMATCHED = "ignore_unmatched"
    SKIP_DUPLICATE = "skip_duplicate"
    RECORD_PAYMENT = "record_payment"
    RECORD_FAILURE = "record_failure"


class SideEffect(str, Enum):
    MARK_MILESTONE_BILLED = "mark_milestone_billed"
    SIGNAL_INVOICE_FULLY_PAID = "signal_invoice_fully_paid"
    MARK_OVERDUE = "mark_overdue"


@dataclass(frozen=True)
class ReconciliationDecision:
    action: ReconciliationAction
    reason: str
    amount: Decimal | None = None
    projected_status: InvoiceStatus | None = None
    effects: tuple[SideEffect, ...] = field(default_factory=tuple)


def decide(
    snapshot: InvoiceSnapshot | None,
    event: PaymentEvent,
    mark_overdue_on_failure: bool = False,
) -> ReconciliationDecision:
    """Decide what ``event`` means for the invoice described by ``snapshot``."""
    if event.kind == PaymentEventKind.FAILED:
        effects: tuple[SideEffect, ...] = ()
        if (
            mark_overdue_on_failure
            and snapshot is not None
            and snapshot.status == InvoiceStatus.SENT
        ):
            effects = (SideEffect.MARK_OVERDUE,)
        return ReconciliationDecision(
            action=ReconciliationAction.RECORD_FAILURE,
            reason=event.reason or "payment_failed",
            projected_status=InvoiceStatus.OVERDUE if effects else (
                snapshot.status if snapshot is not None else None
            ),
            effects=effects,
        )

    if snapshot is None:
        return ReconciliationDecision(
            action=ReconciliationAction.IGNORE_UNMATCHED,
            reason="no_invoice_for_payment_intent",
        )

    amount = event.amount if event.amount is not None else ZERO
    if snapshot.status == InvoiceStatus.PAID and amount <= snapshot.total_paid:
        return ReconciliationDecision(
            action=ReconciliationAction.SKIP_DUPLICATE,
            reason="invoice_already_paid",
            projected_status=snapshot.status,
        )
    if snapshot.reference_paid > ZERO and amount <= snapshot.reference_paid:
        return ReconciliationDecision(
            action=ReconciliationAction.SKIP_DUPLICATE,
            reason="payment_already_recorded",
            projected_status=snapshot.status,
        )

    projected = derive_payment_status(
        snapshot.status, snapshot.total_paid + amount, snapshot.amount
    )
    effects = ()
    if projected == InvoiceStatus.PAID and snapshot.status != InvoiceStatus.PAID:
        effects = (SideEffect.SIGNAL_INVOICE_FULLY_PAID,)
        if snapshot.milestone_id is not None:
            effects = (SideEffect.MARK_MILESTONE_BILLED,) + effects
    return ReconciliationDecision(
        action=ReconciliationAction.RECORD_PAYMENT,
        reason="payment_confirmed",
        amount=amount,
        projected_status=projected,
        effects=effects,
    )


def _invoice_hint(metadata: Any) -> UUID | None:
    if not isinstance(metadata, Mapping):
        return None
    raw = metadata.get("invoice_id") or metadata.get("invoiceId")
    if not raw:
        return None
    try:
        return UUID(str(raw))
    except ValueError:
        return None


def parse_processor_event(payload: Mapping[str, Any]) -> PaymentEvent | None:
    """
    Map a verified processor payload to a PaymentEvent.

    Returns None for event types the reconciler does not handle.

    Raises:
        InvalidWebhookPayloadError: a handled event type lacks required data.
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise InvalidWebhookPayloadError(event_id, "event id and type are required")
    if event_type not in CONFIRMED_EVENT_TYPES | FAILED_EVENT_TYPES:
        return None

    obj = (payload.get("data") or {}).get("object") or {}
    intent_id = obj.get("id")
    if not intent_id:
        raise InvalidWebhookPayloadError(event_id, "payment intent id is missing")
    hint = _invoice_hint(obj.get("metadata"))

    if event_type in FAILED_EVENT_TYPES:
        error = obj.get("last_payment_error") or {}
        return PaymentEvent(
            event_id=event_id,
            event_type=event_type,
            kind=PaymentEventKind.FAILED,
            payment_intent_id=intent_id,
            reason=error.get("message") or error.get("code") or "payment_failed",
            invoice_hint=hint,
        )

    minor = obj.get("amount_received")
    if minor is None:
        minor = obj.get("amount")
    if not isinstance(minor, int) or isinstance(minor, bool) or minor <= 0:
        raise InvalidWebhookPayloadError(event_id, "amount_received must be a positive integer")
    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        kind=PaymentEventKind.CONFIRMED,
        payment_intent_id=intent_id,
        amount=round_amount(Decimal(minor) / MINOR_UNITS_PER_MAJOR),
        invoice_hint=hint,
    )
