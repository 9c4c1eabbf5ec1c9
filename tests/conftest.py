"""
Pytest fixtures for the billing engine test suite.

Provides:
- A fresh database schema per test (in-memory SQLite by default)
- Sessions, a deterministic clock, and service fixtures
- Project / task / milestone / invoice factories
- Payment-processor event builders
- Structured log capture

Environment Variables:
- DATABASE_URL: database to test against.  Defaults to in-memory SQLite
  (foreign keys ON).  Tests marked ``postgres`` are skipped unless this
  points at PostgreSQL.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    init_engine_from_url,
    is_postgres,
    reset_engine,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.domain.statuses import (
    BillingType,
    InvoiceType,
    MilestoneStatus,
    ProjectStatus,
)
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.project import Project
from billing_kernel.services.allocation_validator import BillingAllocationValidator
from billing_kernel.services.invoice_ledger import InvoiceDraft, InvoiceLedger
from billing_kernel.services.milestone_manager import MilestoneManager
from billing_kernel.services.payment_recorder import PaymentRecorder
from billing_kernel.services.webhook_reconciler import WebhookReconciler
from billing_kernel.services.work_item_service import TaskDraft, WorkItemService

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

DEFAULT_DATABASE_URL = "sqlite://"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "api: mark test as exercising the HTTP layer"
    )


def pytest_collection_modifyitems(config, items):
    if get_database_url().startswith("postgresql"):
        return
    skip_pg = pytest.mark.skip(reason="requires DATABASE_URL pointing at PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, validator):
            ...
            logs = captured_logs()
            assert any(r["message"] == "billing_allocation_rejected" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh engine and schema for each test."""
    eng = init_engine_from_url(get_database_url(), echo=False, pool_size=10)
    drop_tables()
    create_tables()
    yield eng
    drop_tables()
    reset_engine()


@pytest.fixture
def session(engine):
    """Session whose work is rolled back after the test; services only flush."""
    sess = get_session()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def postgres_engine(engine):
    if not is_postgres():
        pytest.skip("requires PostgreSQL")
    return engine


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def actor_id():
    return TEST_ACTOR_ID


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def validator(session):
    return BillingAllocationValidator(session)


@pytest.fixture
def milestone_manager(session, clock):
    return MilestoneManager(session, clock)


@pytest.fixture
def invoice_ledger(session, clock):
    return InvoiceLedger(session, clock)


@pytest.fixture
def work_items(session, clock, invoice_ledger):
    return WorkItemService(session, clock, invoice_ledger=invoice_ledger)


@pytest.fixture
def payment_recorder(session, clock):
    return PaymentRecorder(session, clock)


@pytest.fixture
def reconciler(session, clock):
    return WebhookReconciler(session, clock)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def create_project(session):
    """Factory: insert a project (planning, 100,000.00 budget by default)."""

    def _create(
        name: str = "Kitchen remodel",
        total_budget: Decimal = Decimal("100000.00"),
        status: ProjectStatus = ProjectStatus.PLANNING,
    ) -> Project:
        project = Project(name=name, total_budget=total_budget, status=status)
        session.add(project)
        session.flush()
        return project

    return _create


@pytest.fixture
def project(create_project):
    return create_project()


@pytest.fixture
def create_task(work_items, project):
    """Factory: create a task through WorkItemService (validated, linked)."""

    def _create(
        percentage: str | None = "10",
        is_billable: bool = True,
        title: str = "Framing",
        project_id=None,
        billing_type: BillingType = BillingType.PERCENTAGE,
        due_date: datetime | None = None,
    ):
        return work_items.create_task(
            TaskDraft(
                project_id=project_id or project.id,
                title=title,
                is_billable=is_billable,
                billing_type=billing_type,
                billing_percentage=Decimal(percentage) if percentage is not None else None,
                due_date=due_date,
            ),
            actor_id=TEST_ACTOR_ID,
        )

    return _create


@pytest.fixture
def create_milestone(session, project, clock):
    """Factory: insert a standalone milestone directly (no validation)."""

    def _create(
        percentage: str = "10",
        is_billable: bool = True,
        status: MilestoneStatus = MilestoneStatus.PENDING,
        project_id=None,
        title: str = "Rough-in inspection",
    ) -> Milestone:
        milestone = Milestone(
            project_id=project_id or project.id,
            title=title,
            planned_date=clock.now() + timedelta(days=30),
            status=status,
            is_billable=is_billable,
            billing_percentage=Decimal(percentage),
        )
        session.add(milestone)
        session.flush()
        return milestone

    return _create


@pytest.fixture
def create_invoice(invoice_ledger, project):
    """Factory: create a draft invoice through InvoiceLedger."""

    def _create(
        amount: str = "1000.00",
        payment_intent_id: str | None = None,
        milestone_id=None,
        project_id=None,
        invoice_type: InvoiceType = InvoiceType.REGULAR,
    ):
        return invoice_ledger.create_invoice(
            InvoiceDraft(
                project_id=project_id or project.id,
                amount=Decimal(amount),
                invoice_type=invoice_type,
                milestone_id=milestone_id,
                stripe_payment_intent_id=payment_intent_id,
            ),
            actor_id=TEST_ACTOR_ID,
        )

    return _create


# =============================================================================
# Payment-processor events
# =============================================================================


@pytest.fixture
def succeeded_event():
    """Builder for payment_intent.succeeded payloads."""

    def _build(
        payment_intent_id: str,
        amount_cents: int,
        event_id: str | None = None,
        metadata: dict | None = None,
    ) -> dict:
        return {
            "id": event_id or f"evt_{uuid4().hex[:16]}",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": payment_intent_id,
                    "object": "payment_intent",
                    "amount": amount_cents,
                    "amount_received": amount_cents,
                    "currency": "usd",
                    "metadata": metadata or {},
                }
            },
        }

    return _build


@pytest.fixture
def failed_event():
    """Builder for payment_intent.payment_failed payloads."""

    def _build(
        payment_intent_id: str,
        message: str = "Your card was declined.",
        event_id: str | None = None,
    ) -> dict:
        return {
            "id": event_id or f"evt_{uuid4().hex[:16]}",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": payment_intent_id,
                    "object": "payment_intent",
                    "amount": 100000,
                    "last_payment_error": {"code": "card_declined", "message": message},
                    "metadata": {},
                }
            },
        }

    return _build
