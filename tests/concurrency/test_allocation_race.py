"""
Concurrent allocation and payment tests (PostgreSQL only).

Verifies that the project row lock taken by the allocation validator and the
invoice row lock taken by the payment recorder serialize concurrent writers:

- Two transactions each adding 60% to a project: exactly one commits, and
  the project total never exceeds 100%.
- Concurrent webhook deliveries of one event: exactly one payment.
- Concurrent manual payments: the final status reflects every payment.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest
from sqlalchemy.exc import IntegrityError

from billing_kernel.db.engine import get_session_factory, session_scope
from billing_kernel.domain.clock import SystemClock
from billing_kernel.domain.statuses import InvoiceStatus, ProcessorEventOutcome
from billing_kernel.exceptions import BillingPercentageExceededError
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.project import Project
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.services.invoice_ledger import InvoiceDraft, InvoiceLedger
from billing_kernel.services.payment_recorder import PaymentRecorder
from billing_kernel.services.webhook_reconciler import WebhookReconciler
from billing_kernel.services.work_item_service import TaskDraft, WorkItemService

pytestmark = pytest.mark.postgres

WORKERS = 4


def _seed_project() -> Project:
    with session_scope() as session:
        project = Project(name="Race", total_budget=Decimal("100000.00"))
        session.add(project)
        session.flush()
        session.expunge(project)
        return project


def _seed_invoice(project_id, payment_intent_id=None) -> Invoice:
    with session_scope() as session:
        invoice = InvoiceLedger(session).create_invoice(
            InvoiceDraft(
                project_id=project_id,
                amount=Decimal("1000.00"),
                stripe_payment_intent_id=payment_intent_id,
            )
        )
        session.expunge(invoice)
        return invoice


class TestConcurrentAllocation:

    def test_only_one_of_two_60_percent_tasks_commits(self, postgres_engine):
        project = _seed_project()
        factory = get_session_factory()
        barrier = Barrier(2)

        def add_task(title: str) -> str:
            session = factory()
            try:
                barrier.wait()
                WorkItemService(session, SystemClock()).create_task(
                    TaskDraft(
                        project_id=project.id,
                        title=title,
                        is_billable=True,
                        billing_percentage=Decimal("60"),
                    )
                )
                session.commit()
                return "committed"
            except BillingPercentageExceededError:
                session.rollback()
                return "rejected"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = sorted(pool.map(add_task, ["Left", "Right"]))

        assert outcomes == ["committed", "rejected"]
        with session_scope() as session:
            totals = BillingSelector(session).compute_totals(project.id)
            assert totals.grand_total == Decimal("60.00")

    def test_many_small_allocations_never_exceed_cap(self, postgres_engine):
        project = _seed_project()
        factory = get_session_factory()

        def add_task(index: int) -> bool:
            session = factory()
            try:
                WorkItemService(session, SystemClock()).create_task(
                    TaskDraft(
                        project_id=project.id,
                        title=f"Task {index}",
                        is_billable=True,
                        billing_percentage=Decimal("15"),
                    )
                )
                session.commit()
                return True
            except BillingPercentageExceededError:
                session.rollback()
                return False
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            results = list(pool.map(add_task, range(10)))

        assert sum(results) == 6
        with session_scope() as session:
            totals = BillingSelector(session).compute_totals(project.id)
            assert totals.grand_total == Decimal("90.00")


class TestConcurrentPayments:

    def test_concurrent_deliveries_record_one_payment(self, postgres_engine, succeeded_event):
        project = _seed_project()
        invoice = _seed_invoice(project.id, payment_intent_id="pi_race")
        payload = succeeded_event("pi_race", 100000, event_id="evt_race")
        barrier = Barrier(WORKERS)

        def deliver(_: int) -> ProcessorEventOutcome:
            barrier.wait()
            try:
                with session_scope() as session:
                    return WebhookReconciler(session, SystemClock()).handle_payload(payload).outcome
            except IntegrityError:
                # The loser of the processor_events insert race fails at commit
                return ProcessorEventOutcome.DUPLICATE

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            outcomes = list(pool.map(deliver, range(WORKERS)))

        assert outcomes.count(ProcessorEventOutcome.APPLIED) == 1
        with session_scope() as session:
            selector = InvoiceSelector(session)
            assert selector.payment_count(invoice.id) == 1
            assert selector.get(invoice.id).status == InvoiceStatus.PAID

    def test_concurrent_payments_sum_to_paid(self, postgres_engine):
        project = _seed_project()
        invoice = _seed_invoice(project.id)
        barrier = Barrier(WORKERS)

        def pay(_: int) -> None:
            barrier.wait()
            with session_scope() as session:
                PaymentRecorder(session, SystemClock()).record_payment(
                    invoice.id, Decimal("250.00"), "card"
                )

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            list(pool.map(pay, range(WORKERS)))

        with session_scope() as session:
            selector = InvoiceSelector(session)
            assert selector.total_paid(invoice.id) == Decimal("1000.00")
            assert selector.get(invoice.id).status == InvoiceStatus.PAID
