"""
Tests for WebhookReconciler.

Covers:
1. A confirmed payment applied exactly once, however often it is delivered
2. Redelivery with a changed payload under the same event id
3. Failed payments stored, unmatched and unhandled events acknowledged
4. Effects of a fully paid invoice: milestone billed, project started
5. Invoice lookup through payment metadata
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from billing_kernel.domain.statuses import (
    InvoiceStatus,
    MilestoneStatus,
    ProcessorEventOutcome,
    ProjectStatus,
)
from billing_kernel.exceptions import InvalidWebhookPayloadError
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.processor_event import ProcessorEvent
from billing_kernel.selectors.invoice_selector import InvoiceSelector
from billing_kernel.services.webhook_reconciler import WebhookReconciler, hash_payload


def _stored_events(session) -> list[ProcessorEvent]:
    return list(session.scalars(select(ProcessorEvent).order_by(ProcessorEvent.received_at)))


class TestIdempotentPayment:
    """1,000.00 invoice settled by payment intent pi_123."""

    @pytest.fixture
    def invoice(self, create_invoice):
        return create_invoice("1000.00", payment_intent_id="pi_123")

    def test_first_delivery_pays_invoice(self, reconciler, invoice, succeeded_event, session):
        result = reconciler.handle_payload(succeeded_event("pi_123", 100000, event_id="evt_1"))

        assert result.outcome == ProcessorEventOutcome.APPLIED
        assert result.invoice_id == invoice.id
        assert result.invoice_status == InvoiceStatus.PAID
        assert invoice.status == InvoiceStatus.PAID

        payments = InvoiceSelector(session).payments_for(invoice.id)
        assert len(payments) == 1
        assert payments[0].amount == Decimal("1000.00")
        assert payments[0].processor_reference == "pi_123"
        assert payments[0].payment_method == "stripe"

    def test_redelivery_is_acknowledged_without_new_payment(
        self, reconciler, invoice, succeeded_event, session
    ):
        payload = succeeded_event("pi_123", 100000, event_id="evt_1")
        reconciler.handle_payload(payload)

        result = reconciler.handle_payload(payload)

        assert result.outcome == ProcessorEventOutcome.DUPLICATE
        assert result.detail == "event_already_processed"
        assert InvoiceSelector(session).payment_count(invoice.id) == 1
        assert invoice.status == InvoiceStatus.PAID

    def test_many_redeliveries_record_one_payment(
        self, reconciler, invoice, succeeded_event, session
    ):
        payload = succeeded_event("pi_123", 100000, event_id="evt_1")

        outcomes = [reconciler.handle_payload(payload).outcome for _ in range(5)]

        assert outcomes[0] == ProcessorEventOutcome.APPLIED
        assert set(outcomes[1:]) == {ProcessorEventOutcome.DUPLICATE}
        assert InvoiceSelector(session).total_paid(invoice.id) == Decimal("1000.00")
        assert len(_stored_events(session)) == 1

    def test_new_event_for_paid_invoice_is_duplicate(
        self, reconciler, invoice, succeeded_event, session
    ):
        reconciler.handle_payload(succeeded_event("pi_123", 100000, event_id="evt_1"))

        result = reconciler.handle_payload(succeeded_event("pi_123", 100000, event_id="evt_2"))

        assert result.outcome == ProcessorEventOutcome.DUPLICATE
        assert result.detail == "invoice_already_paid"
        assert InvoiceSelector(session).payment_count(invoice.id) == 1

    def test_same_event_id_with_changed_payload_is_rejected(
        self, reconciler, invoice, succeeded_event, session
    ):
        reconciler.handle_payload(succeeded_event("pi_123", 100000, event_id="evt_1"))

        result = reconciler.handle_payload(succeeded_event("pi_123", 5000, event_id="evt_1"))

        assert result.outcome == ProcessorEventOutcome.REJECTED
        assert result.detail == "payload_mismatch"
        assert InvoiceSelector(session).payment_count(invoice.id) == 1

    def test_processor_event_row_is_written(self, reconciler, invoice, succeeded_event, session):
        payload = succeeded_event("pi_123", 100000, event_id="evt_1")

        reconciler.handle_payload(payload)

        (stored,) = _stored_events(session)
        assert stored.event_id == "evt_1"
        assert stored.outcome == ProcessorEventOutcome.APPLIED
        assert stored.invoice_id == invoice.id
        assert stored.payment_intent_id == "pi_123"
        assert stored.payload_hash == hash_payload(payload)

    def test_partial_payment(self, reconciler, invoice, succeeded_event):
        result = reconciler.handle_payload(succeeded_event("pi_123", 40000))

        assert result.invoice_status == InvoiceStatus.PARTIALLY_PAID
        assert not result.project_started


class TestFailedAndUnmatchedEvents:

    def test_failure_is_stored_and_logged(
        self, reconciler, create_invoice, failed_event, session, captured_logs
    ):
        invoice = create_invoice(payment_intent_id="pi_fail")

        result = reconciler.handle_payload(
            failed_event("pi_fail", message="Insufficient funds.", event_id="evt_f")
        )

        assert result.outcome == ProcessorEventOutcome.FAILURE_RECORDED
        assert result.detail == "Insufficient funds."
        assert invoice.status == InvoiceStatus.DRAFT
        (stored,) = _stored_events(session)
        assert stored.invoice_id == invoice.id
        assert stored.detail == "Insufficient funds."
        assert any(
            r["message"] == "payment_failed_recorded" and r["level"] == "WARNING"
            for r in captured_logs()
        )

    def test_failure_marks_sent_invoice_overdue_when_enabled(
        self, session, clock, create_invoice, invoice_ledger, failed_event
    ):
        invoice = create_invoice(payment_intent_id="pi_fail")
        invoice_ledger.send_invoice(invoice.id)
        reconciler = WebhookReconciler(session, clock, mark_overdue_on_failure=True)

        reconciler.handle_payload(failed_event("pi_fail"))

        assert invoice.status == InvoiceStatus.OVERDUE

    def test_failure_without_invoice_is_stored(self, reconciler, failed_event, session, engine):
        result = reconciler.handle_payload(failed_event("pi_unknown"))

        assert result.outcome == ProcessorEventOutcome.FAILURE_RECORDED
        assert result.invoice_id is None
        assert len(_stored_events(session)) == 1

    def test_unmatched_payment_is_acknowledged(self, reconciler, succeeded_event, session, engine):
        result = reconciler.handle_payload(succeeded_event("pi_nobody", 1000))

        assert result.outcome == ProcessorEventOutcome.UNMATCHED
        assert _stored_events(session)[0].outcome == ProcessorEventOutcome.UNMATCHED

    def test_unhandled_event_type_is_ignored(self, reconciler, session, engine):
        result = reconciler.handle_payload({"id": "evt_r", "type": "charge.refunded"})

        assert result.outcome == ProcessorEventOutcome.IGNORED
        assert result.detail == "unhandled_event_type"

    def test_malformed_payload_is_rejected(self, reconciler, engine):
        payload = {"id": "evt_bad", "type": "payment_intent.succeeded", "data": {"object": {}}}

        with pytest.raises(InvalidWebhookPayloadError):
            reconciler.handle_payload(payload)


class TestFullyPaidEffects:

    @pytest.fixture
    def milestone_invoice(self, create_milestone, invoice_ledger):
        milestone = create_milestone("25", status=MilestoneStatus.COMPLETED)
        invoice = invoice_ledger.create_draft_invoice_for_milestone(milestone.id)
        invoice_ledger.attach_payment_intent(invoice.id, "pi_ms")
        return invoice

    def test_milestone_is_billed(self, reconciler, milestone_invoice, succeeded_event, session, clock):
        reconciler.handle_payload(succeeded_event("pi_ms", 2500000))

        milestone = session.get(Milestone, milestone_invoice.milestone_id)
        assert milestone.status == MilestoneStatus.BILLED
        assert milestone.billed_at == clock.now()

    def test_partial_payment_leaves_milestone_completed(
        self, reconciler, milestone_invoice, succeeded_event, session
    ):
        reconciler.handle_payload(succeeded_event("pi_ms", 100000))

        assert session.get(Milestone, milestone_invoice.milestone_id).status == (
            MilestoneStatus.COMPLETED
        )

    def test_first_paid_invoice_starts_project(
        self, reconciler, create_invoice, succeeded_event, project
    ):
        create_invoice("500.00", payment_intent_id="pi_first")

        result = reconciler.handle_payload(succeeded_event("pi_first", 50000))

        assert result.project_started
        assert project.status == ProjectStatus.IN_PROGRESS

    def test_second_paid_invoice_does_not_signal(
        self, reconciler, create_invoice, succeeded_event, project
    ):
        create_invoice("500.00", payment_intent_id="pi_first")
        create_invoice("500.00", payment_intent_id="pi_second")
        reconciler.handle_payload(succeeded_event("pi_first", 50000))

        result = reconciler.handle_payload(succeeded_event("pi_second", 50000))

        assert not result.project_started
        assert project.status == ProjectStatus.IN_PROGRESS

    def test_project_past_planning_is_untouched(
        self, reconciler, create_project, create_invoice, succeeded_event
    ):
        active = create_project(name="Deck", status=ProjectStatus.ON_HOLD)
        create_invoice("500.00", payment_intent_id="pi_hold", project_id=active.id)

        result = reconciler.handle_payload(succeeded_event("pi_hold", 50000))

        assert not result.project_started
        assert active.status == ProjectStatus.ON_HOLD


class TestMetadataLookup:

    def test_payment_intent_attached_from_metadata(
        self, reconciler, create_invoice, succeeded_event
    ):
        invoice = create_invoice("300.00")

        result = reconciler.handle_payload(
            succeeded_event("pi_new", 30000, metadata={"invoice_id": str(invoice.id)})
        )

        assert result.outcome == ProcessorEventOutcome.APPLIED
        assert invoice.stripe_payment_intent_id == "pi_new"
        assert invoice.status == InvoiceStatus.PAID

    def test_hint_for_invoice_with_other_intent_is_unmatched(
        self, reconciler, create_invoice, succeeded_event
    ):
        invoice = create_invoice("300.00", payment_intent_id="pi_other")

        result = reconciler.handle_payload(
            succeeded_event("pi_new", 30000, metadata={"invoice_id": str(invoice.id)})
        )

        assert result.outcome == ProcessorEventOutcome.UNMATCHED
        assert invoice.stripe_payment_intent_id == "pi_other"

    def test_hint_for_unknown_invoice_is_unmatched(self, reconciler, succeeded_event, engine):
        result = reconciler.handle_payload(
            succeeded_event("pi_new", 30000, metadata={"invoice_id": str(uuid4())})
        )

        assert result.outcome == ProcessorEventOutcome.UNMATCHED
