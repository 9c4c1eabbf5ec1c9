"""
Invoice Workflow.

Closed state machine for invoice status.  Every status change in the kernel
is checked against ``INVOICE_WORKFLOW`` by ``require_transition``; payment
driven status is derived by ``derive_payment_status``.

Ordering used for monotonicity:

    draft (0) < sent, overdue (1) < partially_paid (2) < paid (3)

``cancelled`` sits outside the ordering and is terminal, as is ``paid``.
"""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from billing_kernel.db.types import ZERO
from billing_kernel.domain.statuses import InvoiceStatus
from billing_kernel.exceptions import InvalidInvoiceTransitionError


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: InvoiceStatus
    to_state: InvoiceStatus
    action: str


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    initial_state: InvoiceStatus
    terminal_states: frozenset[InvoiceStatus]
    transitions: tuple[Transition, ...]

    def allows(self, from_state: InvoiceStatus, to_state: InvoiceStatus) -> bool:
        return any(
            t.from_state == from_state and t.to_state == to_state
            for t in self.transitions
        )


_S = InvoiceStatus

INVOICE_WORKFLOW = Workflow(
    name="invoice",
    initial_state=_S.DRAFT,
    terminal_states=frozenset({_S.PAID, _S.CANCELLED}),
    transitions=(
        Transition(_S.DRAFT, _S.SENT, action="send"),
        Transition(_S.DRAFT, _S.PARTIALLY_PAID, action="apply_payment"),
        Transition(_S.DRAFT, _S.PAID, action="apply_payment"),
        Transition(_S.DRAFT, _S.CANCELLED, action="cancel"),
        Transition(_S.SENT, _S.OVERDUE, action="mark_overdue"),
        Transition(_S.SENT, _S.PARTIALLY_PAID, action="apply_payment"),
        Transition(_S.SENT, _S.PAID, action="apply_payment"),
        Transition(_S.SENT, _S.CANCELLED, action="cancel"),
        Transition(_S.OVERDUE, _S.PARTIALLY_PAID, action="apply_payment"),
        Transition(_S.OVERDUE, _S.PAID, action="apply_payment"),
        Transition(_S.OVERDUE, _S.CANCELLED, action="cancel"),
        Transition(_S.PARTIALLY_PAID, _S.PAID, action="apply_payment"),
        Transition(_S.PARTIALLY_PAID, _S.CANCELLED, action="cancel"),
    ),
)

STATUS_RANK: dict[InvoiceStatus, int] = {
    _S.DRAFT: 0,
    _S.SENT: 1,
    _S.OVERDUE: 1,
    _S.PARTIALLY_PAID: 2,
    _S.PAID: 3,
}


def is_terminal(status: InvoiceStatus) -> bool:
    return status in INVOICE_WORKFLOW.terminal_states


def require_transition(
    invoice_id: UUID | None,
    from_status: InvoiceStatus,
    to_status: InvoiceStatus,
) -> None:
    """
    Raises:
        InvalidInvoiceTransitionError: transition is not in the table.
    """
    if not INVOICE_WORKFLOW.allows(from_status, to_status):
        raise InvalidInvoiceTransitionError(invoice_id, from_status.value, to_status.value)


def derive_payment_status(
    current: InvoiceStatus,
    total_paid: Decimal,
    amount: Decimal,
) -> InvoiceStatus:
    """
    Status implied by the invoice's full payment set.

    Returns ``current`` when payments imply no forward move: a later, smaller
    view of the payments never moves ``paid`` back, and payments never change
    a cancelled invoice.
    """
    if is_terminal(current):
        return current
    if total_paid >= amount:
        target = _S.PAID
    elif total_paid > ZERO:
        target = _S.PARTIALLY_PAID
    else:
        return current
    if STATUS_RANK[target] <= STATUS_RANK[current]:
        return current
    return target
