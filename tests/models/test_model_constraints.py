"""
Database-level constraints and column types.

These hold even for writes that bypass the services.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from billing_kernel.domain.statuses import InvoiceStatus, ProcessorEventOutcome
from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.processor_event import ProcessorEvent
from billing_kernel.models.project import Project


def _invoice(project_id, number="INV-TEST-1", payment_intent_id=None) -> Invoice:
    now = datetime(2024, 3, 15, tzinfo=timezone.utc)
    return Invoice(
        project_id=project_id,
        invoice_number=number,
        amount=Decimal("10.00"),
        status=InvoiceStatus.DRAFT,
        issue_date=now,
        due_date=now + timedelta(days=30),
        stripe_payment_intent_id=payment_intent_id,
    )


class TestUniqueness:

    def test_invoice_number_is_unique(self, session, project):
        session.add(_invoice(project.id))
        session.flush()

        session.add(_invoice(project.id))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_payment_intent_is_unique_when_present(self, session, project):
        session.add(_invoice(project.id, "INV-1"))
        session.add(_invoice(project.id, "INV-2"))
        session.flush()

        session.add(_invoice(project.id, "INV-3", payment_intent_id="pi_1"))
        session.add(_invoice(project.id, "INV-4", payment_intent_id="pi_1"))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_processor_event_id_is_unique(self, session, clock):
        for _ in range(2):
            session.add(
                ProcessorEvent(
                    event_id="evt_1",
                    event_type="payment_intent.succeeded",
                    payload_hash="0" * 64,
                    outcome=ProcessorEventOutcome.APPLIED,
                    received_at=clock.now(),
                )
            )
        with pytest.raises(IntegrityError):
            session.flush()


class TestForeignKeys:

    def test_invoice_requires_project(self, session, engine):
        session.add(_invoice(uuid4()))

        with pytest.raises(IntegrityError):
            session.flush()


class TestAppendOnlyEvents:

    def test_processor_event_cannot_be_modified(self, session, clock):
        record = ProcessorEvent(
            event_id="evt_1",
            event_type="payment_intent.succeeded",
            payload_hash="0" * 64,
            outcome=ProcessorEventOutcome.APPLIED,
            received_at=clock.now(),
        )
        session.add(record)
        session.flush()

        record.outcome = ProcessorEventOutcome.DUPLICATE
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestColumnTypes:

    def test_datetimes_round_trip_as_aware_utc(self, session, project):
        invoice = _invoice(project.id)
        session.add(invoice)
        session.flush()
        session.expire_all()

        loaded = session.get(Invoice, invoice.id)

        assert loaded.issue_date.tzinfo is not None
        assert loaded.issue_date == datetime(2024, 3, 15, tzinfo=timezone.utc)

    def test_amounts_round_trip_as_decimals(self, session, create_project):
        project = create_project(total_budget=Decimal("12345.67"))
        session.expire_all()

        loaded = session.get(Project, project.id)

        assert loaded.total_budget == Decimal("12345.67")
        assert isinstance(loaded.total_budget, Decimal)
