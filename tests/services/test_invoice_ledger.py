"""
Tests for InvoiceLedger.

Covers:
1. Creation: forced DRAFT status, numbering, reference and amount checks
2. Partial updates and the draft-only amount rule
3. Deletion refused while payments exist
4. Explicit transitions and the overdue sweep
5. Milestone invoices drafted from the project budget
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.domain.statuses import InvoiceStatus, InvoiceType, MilestoneStatus
from billing_kernel.exceptions import (
    DuplicatePaymentIntentError,
    InvalidAmountError,
    InvalidInvoiceTransitionError,
    InvalidReferenceError,
    InvoiceHasPaymentsError,
    InvoiceNotFoundError,
    MilestoneNotBillableError,
    MilestoneStateError,
)
from billing_kernel.models.invoice import Invoice
from billing_kernel.services.invoice_ledger import (
    INVALID_MILESTONE_MESSAGE,
    INVALID_PROJECT_MESSAGE,
    InvoiceDraft,
)


class TestCreateInvoice:

    def test_status_is_forced_to_draft(self, invoice_ledger, project, actor_id):
        invoice = invoice_ledger.create_invoice(
            InvoiceDraft(project_id=project.id, amount="500.00", status=InvoiceStatus.PAID),
            actor_id=actor_id,
        )

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.created_by_id == actor_id

    def test_numbers_are_sequential_per_month(self, create_invoice):
        first = create_invoice()
        second = create_invoice()

        assert first.invoice_number == "INV-202403-000001"
        assert second.invoice_number == "INV-202403-000002"

    def test_due_date_defaults_to_payment_terms(self, create_invoice, clock):
        invoice = create_invoice()

        assert invoice.issue_date == clock.now()
        assert (invoice.due_date - invoice.issue_date).days == 30

    def test_unknown_project_is_rejected(self, create_invoice, engine):
        with pytest.raises(InvalidReferenceError) as exc_info:
            create_invoice(project_id=uuid4())

        assert exc_info.value.message == INVALID_PROJECT_MESSAGE
        assert exc_info.value.message == "Invalid project associated with the invoice."

    @pytest.mark.parametrize("amount", ["0", "-10.00", "ten", None])
    def test_invalid_amount(self, invoice_ledger, project, amount):
        with pytest.raises(InvalidAmountError):
            invoice_ledger.create_invoice(InvoiceDraft(project_id=project.id, amount=amount))

    def test_float_amount_is_rejected(self, invoice_ledger, project):
        with pytest.raises(InvalidAmountError):
            invoice_ledger.create_invoice(InvoiceDraft(project_id=project.id, amount=10.5))

    def test_duplicate_payment_intent(self, create_invoice, session):
        create_invoice(payment_intent_id="pi_dup")

        with pytest.raises(DuplicatePaymentIntentError):
            create_invoice(payment_intent_id="pi_dup")

        # The first invoice survives the failed insert
        assert session.query(Invoice).count() == 1

    def test_milestone_must_exist(self, create_invoice):
        with pytest.raises(InvalidReferenceError) as exc_info:
            create_invoice(milestone_id=uuid4())

        assert exc_info.value.message == INVALID_MILESTONE_MESSAGE

    def test_milestone_of_another_project_is_rejected(
        self, create_project, create_milestone, create_invoice, session
    ):
        other = create_project(name="Bathroom refit")
        foreign_milestone = create_milestone(project_id=other.id)

        with pytest.raises(InvalidReferenceError) as exc_info:
            create_invoice(milestone_id=foreign_milestone.id)

        assert exc_info.value.message == "Invalid milestone associated with the invoice."
        assert session.query(Invoice).count() == 0


class TestUpdateInvoice:

    def test_empty_patch_is_a_noop(self, create_invoice, invoice_ledger):
        invoice = create_invoice()

        assert invoice_ledger.update_invoice(invoice.id, {}) is invoice
        assert invoice.updated_by_id is None

    def test_same_values_are_a_noop(self, create_invoice, invoice_ledger, actor_id):
        invoice = create_invoice("1000.00")

        invoice_ledger.update_invoice(invoice.id, {"amount": "1000.00"}, actor_id=actor_id)

        assert invoice.updated_by_id is None

    def test_updates_fields(self, create_invoice, invoice_ledger, actor_id):
        invoice = create_invoice()

        invoice_ledger.update_invoice(
            invoice.id,
            {"description": "Deposit", "customer_name": "R. Alvarez"},
            actor_id=actor_id,
        )

        assert invoice.description == "Deposit"
        assert invoice.customer_name == "R. Alvarez"
        assert invoice.updated_by_id == actor_id

    def test_status_in_patch_is_ignored(self, create_invoice, invoice_ledger):
        invoice = create_invoice()

        invoice_ledger.update_invoice(invoice.id, {"status": InvoiceStatus.PAID})

        assert invoice.status == InvoiceStatus.DRAFT

    def test_amount_changes_only_while_draft(self, create_invoice, invoice_ledger):
        invoice = create_invoice()
        invoice_ledger.send_invoice(invoice.id)

        with pytest.raises(InvalidAmountError):
            invoice_ledger.update_invoice(invoice.id, {"amount": "1200.00"})

        assert invoice.amount == Decimal("1000.00")

    def test_attach_payment_intent(self, create_invoice, invoice_ledger):
        invoice = create_invoice()

        invoice_ledger.attach_payment_intent(invoice.id, "pi_attach")

        assert invoice.stripe_payment_intent_id == "pi_attach"

    def test_unknown_invoice(self, invoice_ledger, engine):
        with pytest.raises(InvoiceNotFoundError):
            invoice_ledger.update_invoice(uuid4(), {"description": "x"})


class TestDeleteInvoice:
    """An invoice with payments cannot be deleted."""

    def test_delete_without_payments(self, create_invoice, invoice_ledger, session):
        invoice = create_invoice()

        invoice_ledger.delete_invoice(invoice.id)

        assert session.get(Invoice, invoice.id) is None

    def test_delete_with_payment_is_refused(
        self, create_invoice, invoice_ledger, payment_recorder, session
    ):
        invoice = create_invoice("1000.00")
        payment_recorder.record_payment(invoice.id, "250.00", "check")

        with pytest.raises(InvoiceHasPaymentsError) as exc_info:
            invoice_ledger.delete_invoice(invoice.id)

        assert exc_info.value.payment_count == 1
        assert session.get(Invoice, invoice.id) is not None


class TestStatusActions:

    def test_send(self, create_invoice, invoice_ledger, clock):
        invoice = create_invoice()

        invoice_ledger.send_invoice(invoice.id)

        assert invoice.status == InvoiceStatus.SENT
        assert invoice.sent_at == clock.now()

    def test_send_twice_is_refused(self, create_invoice, invoice_ledger):
        invoice = create_invoice()
        invoice_ledger.send_invoice(invoice.id)

        with pytest.raises(InvalidInvoiceTransitionError):
            invoice_ledger.send_invoice(invoice.id)

    def test_cancel(self, create_invoice, invoice_ledger, clock):
        invoice = create_invoice()

        invoice_ledger.cancel_invoice(invoice.id)

        assert invoice.status == InvoiceStatus.CANCELLED
        assert invoice.cancelled_at == clock.now()

    def test_paid_invoice_cannot_be_cancelled(
        self, create_invoice, invoice_ledger, payment_recorder
    ):
        invoice = create_invoice("100.00")
        payment_recorder.record_payment(invoice.id, "100.00", "card")

        with pytest.raises(InvalidInvoiceTransitionError):
            invoice_ledger.cancel_invoice(invoice.id)

    def test_overdue_sweep_moves_only_past_due_sent_invoices(
        self, create_invoice, invoice_ledger
    ):
        sent = create_invoice()
        draft = create_invoice()
        invoice_ledger.send_invoice(sent.id)

        moved = invoice_ledger.mark_overdue_invoices(
            as_of=datetime(2024, 5, 1, tzinfo=timezone.utc)
        )

        assert moved == [sent.id]
        assert sent.status == InvoiceStatus.OVERDUE
        assert draft.status == InvoiceStatus.DRAFT

    def test_overdue_sweep_before_due_date_moves_nothing(self, create_invoice, invoice_ledger):
        invoice = create_invoice()
        invoice_ledger.send_invoice(invoice.id)

        assert invoice_ledger.mark_overdue_invoices() == []
        assert invoice.status == InvoiceStatus.SENT


class TestMilestoneInvoice:

    def test_amount_is_share_of_budget(self, create_milestone, invoice_ledger, clock):
        milestone = create_milestone("25", status=MilestoneStatus.COMPLETED)

        invoice = invoice_ledger.create_draft_invoice_for_milestone(milestone.id)

        assert invoice.amount == Decimal("25000.00")
        assert invoice.invoice_type == InvoiceType.MILESTONE
        assert invoice.milestone_id == milestone.id
        assert invoice.status == InvoiceStatus.DRAFT
        assert (invoice.due_date - clock.now()).days == 14
        assert "25.00% of project total" in invoice.description

    def test_description_shows_two_decimal_percentage(self, create_milestone, invoice_ledger):
        milestone = create_milestone("12.5", status=MilestoneStatus.COMPLETED)

        invoice = invoice_ledger.create_draft_invoice_for_milestone(milestone.id)

        assert invoice.description == (
            "Milestone payment: Rough-in inspection (12.50% of project total)"
        )
        assert invoice.amount == Decimal("12500.00")

    def test_second_live_invoice_is_refused(self, create_milestone, invoice_ledger):
        milestone = create_milestone("25", status=MilestoneStatus.COMPLETED)
        invoice_ledger.create_draft_invoice_for_milestone(milestone.id)

        with pytest.raises(MilestoneStateError):
            invoice_ledger.create_draft_invoice_for_milestone(milestone.id)

    def test_cancelled_invoice_allows_a_new_draft(self, create_milestone, invoice_ledger):
        milestone = create_milestone("25", status=MilestoneStatus.COMPLETED)
        first = invoice_ledger.create_draft_invoice_for_milestone(milestone.id)
        invoice_ledger.cancel_invoice(first.id)

        second = invoice_ledger.create_draft_invoice_for_milestone(milestone.id)

        assert second.id != first.id

    def test_non_billable_milestone(self, create_milestone, invoice_ledger):
        milestone = create_milestone("25", is_billable=False)

        with pytest.raises(MilestoneNotBillableError):
            invoice_ledger.create_draft_invoice_for_milestone(milestone.id)

    def test_zero_budget_project(self, create_project, create_milestone, invoice_ledger):
        empty = create_project(name="Shed", total_budget=Decimal("0"))
        milestone = create_milestone("25", project_id=empty.id)

        with pytest.raises(InvalidAmountError):
            invoice_ledger.create_draft_invoice_for_milestone(milestone.id)
