"""
Invoice and payment routes.

Each handler runs inside the request session from ``get_db_session``; the
session is committed after the handler returns.  Handlers return views read
back through InvoiceSelector so responses show the flushed state.
"""

from uuid import UUID

from fastapi import APIRouter, Query, status

from billing_api.dependencies import (
    ActorDep,
    ClockDep,
    InvoiceLedgerDep,
    InvoiceSelectorDep,
    PaymentRecorderDep,
    SessionDep,
)
from billing_api.schemas import (
    InvoiceCreate,
    InvoiceDetailOut,
    InvoiceOut,
    InvoiceUpdate,
    OverdueSweep,
    OverdueSweepOut,
    PaymentCreate,
    PaymentRecorded,
)
from billing_kernel.domain.statuses import InvoiceStatus
from billing_kernel.exceptions import ProjectNotFoundError
from billing_kernel.logging_config import LogContext
from billing_kernel.models.project import Project
from billing_kernel.services.invoice_ledger import InvoiceDraft

router = APIRouter(tags=["invoices"])


@router.post(
    "/projects/{project_id}/invoices",
    response_model=InvoiceOut,
    status_code=status.HTTP_201_CREATED,
)
def create_invoice(
    project_id: UUID,
    body: InvoiceCreate,
    ledger: InvoiceLedgerDep,
    selector: InvoiceSelectorDep,
    actor_id: ActorDep,
):
    LogContext.set(project_id=str(project_id))
    invoice = ledger.create_invoice(
        InvoiceDraft(project_id=project_id, **body.model_dump()),
        actor_id=actor_id,
    )
    return selector.get(invoice.id)


@router.get("/projects/{project_id}/invoices", response_model=list[InvoiceOut])
def list_project_invoices(project_id: UUID, session: SessionDep, selector: InvoiceSelectorDep):
    if session.get(Project, project_id) is None:
        raise ProjectNotFoundError(project_id)
    return selector.list_for_project(project_id)


@router.get("/invoices", response_model=list[InvoiceOut])
def list_invoices(
    selector: InvoiceSelectorDep,
    status_filter: InvoiceStatus | None = Query(default=None, alias="status"),
):
    return selector.list_all(status_filter)


@router.post("/invoices/mark-overdue", response_model=OverdueSweepOut)
def mark_overdue_invoices(
    ledger: InvoiceLedgerDep,
    clock: ClockDep,
    body: OverdueSweep | None = None,
):
    """Sweep SENT invoices past their due date to OVERDUE (scheduler entry point)."""
    as_of = (body.as_of if body is not None else None) or clock.now()
    return OverdueSweepOut(as_of=as_of, marked_overdue=ledger.mark_overdue_invoices(as_of))


@router.get("/invoices/{invoice_id}", response_model=InvoiceDetailOut)
def get_invoice(invoice_id: UUID, selector: InvoiceSelectorDep):
    return selector.get_with_payments(invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: UUID,
    body: InvoiceUpdate,
    ledger: InvoiceLedgerDep,
    selector: InvoiceSelectorDep,
    actor_id: ActorDep,
):
    LogContext.set(invoice_id=str(invoice_id))
    ledger.update_invoice(invoice_id, body.model_dump(exclude_unset=True), actor_id=actor_id)
    return selector.get(invoice_id)


@router.delete("/invoices/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(invoice_id: UUID, ledger: InvoiceLedgerDep) -> None:
    LogContext.set(invoice_id=str(invoice_id))
    ledger.delete_invoice(invoice_id)


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceOut)
def send_invoice(invoice_id: UUID, ledger: InvoiceLedgerDep, selector: InvoiceSelectorDep):
    LogContext.set(invoice_id=str(invoice_id))
    ledger.send_invoice(invoice_id)
    return selector.get(invoice_id)


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(invoice_id: UUID, ledger: InvoiceLedgerDep, selector: InvoiceSelectorDep):
    LogContext.set(invoice_id=str(invoice_id))
    ledger.cancel_invoice(invoice_id)
    return selector.get(invoice_id)


@router.post(
    "/invoices/{invoice_id}/payments",
    response_model=PaymentRecorded,
    status_code=status.HTTP_201_CREATED,
)
def record_payment(
    invoice_id: UUID,
    body: PaymentCreate,
    recorder: PaymentRecorderDep,
    actor_id: ActorDep,
):
    LogContext.set(invoice_id=str(invoice_id))
    return recorder.record_payment(
        invoice_id,
        body.amount,
        payment_method=body.payment_method,
        payment_date=body.payment_date,
        recorded_by=actor_id,
        processor_reference=body.processor_reference,
        notes=body.notes,
    )
