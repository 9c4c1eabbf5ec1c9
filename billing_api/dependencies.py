"""
Request-scoped dependencies: session, configuration, clock, services.

Responsibility:
    One Session per request.  The session is committed when the route
    returns and rolled back when it raises, so a service call and the writes
    it guards land together or not at all.  Services are constructed per
    request from configuration values; the kernel never sees BillingConfig.

Architecture position:
    API layer.  Used through ``fastapi.Depends`` by every route module.
"""

from collections.abc import Iterator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, Request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from billing_config import BillingConfig
from billing_kernel.db.engine import get_session
from billing_kernel.domain.clock import Clock
from billing_kernel.exceptions import StoreUnavailableError, TransactionConflictError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.services.invoice_ledger import InvoiceLedger
from billing_kernel.services.payment_recorder import PaymentRecorder
from billing_kernel.services.work_item_service import WorkItemService

logger = get_logger("api.dependencies")


def get_config(request: Request) -> BillingConfig:
    return request.app.state.config


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_db_session() -> Iterator[Session]:
    """
    Request transaction.

    Declared with ``scope="function"``: the commit runs before the response
    is sent, and a failed commit surfaces as StoreUnavailableError (503) or
    TransactionConflictError (409).
    """
    session = get_session()
    try:
        yield session
        try:
            session.commit()
        except IntegrityError as exc:
            raise TransactionConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(str(exc)) from exc
    except Exception:
        session.rollback()
        logger.debug("request_transaction_rolled_back")
        raise
    finally:
        session.close()


def get_actor_id(x_actor_id: Annotated[UUID | None, Header()] = None) -> UUID | None:
    """Acting user as asserted by the fronting auth layer."""
    if x_actor_id is not None:
        LogContext.set(actor_id=str(x_actor_id))
    return x_actor_id


SessionDep = Annotated[Session, Depends(get_db_session, scope="function")]
ConfigDep = Annotated[BillingConfig, Depends(get_config)]
ClockDep = Annotated[Clock, Depends(get_clock)]
ActorDep = Annotated[UUID | None, Depends(get_actor_id)]


def get_invoice_ledger(session: SessionDep, config: ConfigDep, clock: ClockDep) -> InvoiceLedger:
    return InvoiceLedger(
        session,
        clock,
        number_prefix=config.invoicing.number_prefix,
        payment_terms_days=config.invoicing.payment_terms_days,
        milestone_due_days=config.invoicing.milestone_due_days,
    )


InvoiceLedgerDep = Annotated[InvoiceLedger, Depends(get_invoice_ledger)]


def get_work_item_service(
    session: SessionDep,
    config: ConfigDep,
    clock: ClockDep,
    invoices: InvoiceLedgerDep,
) -> WorkItemService:
    return WorkItemService(
        session,
        clock,
        percentage_cap=config.ledger.percentage_cap,
        default_task_percentage=config.milestones.default_task_percentage,
        auto_create_milestones=config.milestones.auto_create_for_billable_tasks,
        invoice_ledger=invoices,
    )


def get_payment_recorder(session: SessionDep, clock: ClockDep) -> PaymentRecorder:
    return PaymentRecorder(session, clock)


def get_invoice_selector(session: SessionDep) -> InvoiceSelector:
    return InvoiceSelector(session)


def get_billing_selector(session: SessionDep) -> BillingSelector:
    return BillingSelector(session)


WorkItemServiceDep = Annotated[WorkItemService, Depends(get_work_item_service)]
PaymentRecorderDep = Annotated[PaymentRecorder, Depends(get_payment_recorder)]
InvoiceSelectorDep = Annotated[InvoiceSelector, Depends(get_invoice_selector)]
BillingSelectorDep = Annotated[BillingSelector, Depends(get_billing_selector)]
