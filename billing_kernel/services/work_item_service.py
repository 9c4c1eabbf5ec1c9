"""
WorkItemService -- task and milestone write paths.

Responsibility:
    Creates, edits, deletes and completes tasks and milestones.  Every write
    that sets or changes a billing percentage is validated against the
    project's 100% budget first, and every change to one side of a
    task<->milestone link is mirrored onto the other side.

Architecture position:
    Kernel > Services.  Called by the task and milestone API routes.
    Composes BillingAllocationValidator, MilestoneManager and InvoiceLedger;
    all of them share the caller's session and transaction.

Invariants enforced:
    PERCENTAGE_BUDGET -- the validator runs (project row locked) before the
        insert or update that carries the percentage.
    TASK_MILESTONE_SYNC -- percentage and billable-flag edits on either side
        go through MilestoneManager.sync_billing_percentage.

Failure modes:
    - BillingPercentageExceededError / InvalidPercentageError from the
      validator; nothing is written.
    - TaskNotFoundError / MilestoneNotFoundError / ProjectNotFoundError.
    - TaskNotBillableError: convert of a non-billable, completed or already
      linked task.
    - MilestoneLockedError: delete of a completed or billed milestone.
    - MilestoneStateError / MilestoneNotBillableError: bill_milestone on a
      milestone that is not completed, already billed, or not billable.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from billing_kernel.db.types import HUNDRED, ZERO
from billing_kernel.domain.clock import Clock
from billing_kernel.domain.statuses import (
    BillingType,
    MilestoneCategory,
    MilestoneStatus,
    TaskStatus,
)
from billing_kernel.exceptions import (
    MilestoneLockedError,
    MilestoneNotBillableError,
    MilestoneStateError,
    TaskNotBillableError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.models.invoice import Invoice
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.task import Task
from billing_kernel.services.allocation_validator import (
    BillingAllocationValidator,
    normalize_percentage,
)
from billing_kernel.services.base import BaseService
from billing_kernel.services.invoice_ledger import InvoiceLedger
from billing_kernel.services.milestone_manager import MilestoneManager

logger = get_logger("services.work_item_service")

TASK_UPDATABLE_FIELDS = frozenset({
    "title",
    "description",
    "status",
    "due_date",
    "is_billable",
    "billing_type",
    "billing_percentage",
})

MILESTONE_UPDATABLE_FIELDS = frozenset({
    "title",
    "description",
    "planned_date",
    "status",
    "is_billable",
    "billing_percentage",
})


@dataclass(frozen=True)
class TaskDraft:
    project_id: UUID
    title: str
    description: str | None = None
    status: TaskStatus = TaskStatus.TODO
    due_date: datetime | None = None
    is_billable: bool = False
    billing_type: BillingType = BillingType.PERCENTAGE
    # None: the configured default applies to billable tasks
    billing_percentage: Any = None


@dataclass(frozen=True)
class MilestoneDraft:
    project_id: UUID
    title: str
    planned_date: datetime
    description: str | None = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    is_billable: bool = False
    billing_percentage: Any = None


@dataclass(frozen=True)
class TaskCompletion:
    """Outcome of complete_task: the task, its milestone and any drafted invoice."""

    task: Task
    milestone: Milestone | None
    invoice: Invoice | None


class WorkItemService(BaseService):
    """
    Task and milestone write surface.

    Contract:
        Each method flushes and returns ORM rows; the caller commits.  A
        rejected percentage leaves the session exactly as it was.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        percentage_cap: Decimal = HUNDRED,
        default_task_percentage: Decimal = ZERO,
        auto_create_milestones: bool = True,
        invoice_ledger: InvoiceLedger | None = None,
    ):
        super().__init__(session, clock)
        self._default_task_percentage = default_task_percentage
        self._auto_create_milestones = auto_create_milestones
        self._validator = BillingAllocationValidator(session, cap=percentage_cap)
        self._milestones = MilestoneManager(session, clock)
        self._invoices = invoice_ledger or InvoiceLedger(session, clock)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, draft: TaskDraft, actor_id: UUID | None = None) -> Task:
        """Validate, insert, then link a milestone for a billable task."""
        if draft.billing_percentage is None:
            percentage = self._default_task_percentage if draft.is_billable else ZERO
        else:
            percentage = normalize_percentage(draft.billing_percentage)

        if draft.is_billable:
            self._validator.require_task_percentage(draft.project_id, percentage)
        else:
            self._validator.lock_project(draft.project_id)

        task = Task(
            project_id=draft.project_id,
            title=draft.title,
            description=draft.description,
            status=draft.status,
            due_date=draft.due_date,
            is_billable=draft.is_billable,
            billing_type=draft.billing_type,
            billing_percentage=percentage,
            completed_at=self._clock.now() if draft.status == TaskStatus.COMPLETED else None,
            created_by_id=actor_id,
        )
        self.session.add(task)
        self.session.flush()
        logger.info(
            "task_created",
            extra={
                "project_id": str(task.project_id),
                "task_id": str(task.id),
                "is_billable": task.is_billable,
                "billing_percentage": task.billing_percentage,
            },
        )

        if self._auto_create_milestones:
            self._milestones.on_task_created(task, actor_id=actor_id)
        return task

    def update_task(
        self,
        task_id: UUID,
        patch: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> Task:
        """
        Apply a partial update.

        Percentage and billable-flag changes are validated (excluding the
        task and its milestone) and mirrored onto the linked milestone.
        A task that becomes billable gets its milestone.
        """
        task = self._milestones.get_task(task_id)
        changes = {k: v for k, v in patch.items() if k in TASK_UPDATABLE_FIELDS}
        if "billing_percentage" in changes:
            changes["billing_percentage"] = normalize_percentage(changes["billing_percentage"])
        changes = {k: v for k, v in changes.items() if getattr(task, k) != v}
        if not changes:
            return task

        is_billable = changes.get("is_billable", task.is_billable)
        percentage = changes.get("billing_percentage", task.billing_percentage)
        billing_changed = bool({"billing_percentage", "is_billable", "billing_type"} & changes.keys())

        if billing_changed and is_billable:
            self._validator.require_task_percentage(
                task.project_id, percentage, exclude_task_id=task.id
            )

        for field_name, value in changes.items():
            if field_name in ("billing_percentage", "is_billable"):
                continue
            setattr(task, field_name, value)
        if changes.get("status") == TaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = self._clock.now()
        task.updated_by_id = actor_id
        self.session.flush()

        if "billing_percentage" in changes or "is_billable" in changes:
            self._milestones.on_task_billing_percentage_changed(
                task.id, percentage, is_billable if "is_billable" in changes else None
            )
        if is_billable and task.milestone_id is None and self._auto_create_milestones:
            self._milestones.on_task_created(task, actor_id=actor_id)

        logger.info(
            "task_updated",
            extra={
                "project_id": str(task.project_id),
                "task_id": str(task.id),
                "fields": sorted(changes),
            },
        )
        return task

    def delete_task(self, task_id: UUID) -> None:
        """Delete a task; its milestone survives, unlinked."""
        task = self._milestones.get_task(task_id)
        self._milestones.unlink_task(task)
        self.session.delete(task)
        self.session.flush()
        logger.info(
            "task_deleted",
            extra={"project_id": str(task.project_id), "task_id": str(task_id)},
        )

    def complete_task(self, task_id: UUID, actor_id: UUID | None = None) -> TaskCompletion:
        """
        Complete a task and bill its linked milestone.

        When the task is linked to a milestone that is not yet completed,
        the milestone is completed too and, if billable, a draft invoice is
        created for it.
        """
        task = self._milestones.get_task(task_id)
        if task.status == TaskStatus.COMPLETED:
            raise TaskNotBillableError(task.id, "Task is already completed")

        now = self._clock.now()
        task.status = TaskStatus.COMPLETED
        task.completed_at = now
        task.updated_by_id = actor_id
        self.session.flush()
        logger.info(
            "task_completed",
            extra={"project_id": str(task.project_id), "task_id": str(task.id)},
        )

        milestone = None
        invoice = None
        if task.milestone_id is not None:
            milestone = self._milestones.get_milestone(task.milestone_id)
            if not milestone.is_locked:
                self._milestones.complete_milestone(milestone.id)
                if milestone.is_billable and milestone.billing_percentage > ZERO:
                    invoice = self._invoices.create_draft_invoice_for_milestone(
                        milestone.id, actor_id=actor_id
                    )
        return TaskCompletion(task=task, milestone=milestone, invoice=invoice)

    def convert_task_to_milestone(
        self,
        task_id: UUID,
        actor_id: UUID | None = None,
    ) -> Milestone:
        """
        Create a task_conversion milestone for a billable task and link it.

        Raises:
            TaskNotBillableError: task is not billable, is completed, or is
                already linked to a milestone.
        """
        task = self._milestones.get_task(task_id)
        if not task.is_billable:
            raise TaskNotBillableError(
                task.id, "Only billable tasks can be converted to milestones"
            )
        if task.status == TaskStatus.COMPLETED:
            raise TaskNotBillableError(task.id, "Cannot convert completed task to milestone")
        if task.milestone_id is not None:
            raise TaskNotBillableError(task.id, "Task is already linked to a milestone")

        # The pair counts once, so the task's existing allocation already covers it
        self._validator.require_task_percentage(
            task.project_id, task.billing_percentage, exclude_task_id=task.id
        )
        return self._milestones.create_linked_milestone(
            task,
            category=MilestoneCategory.TASK_CONVERSION,
            actor_id=actor_id,
            title=f"Task Milestone: {task.title}",
            description=task.description or f"Converted from billable task: {task.title}",
        )

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def create_milestone(self, draft: MilestoneDraft, actor_id: UUID | None = None) -> Milestone:
        percentage = (
            ZERO
            if draft.billing_percentage is None
            else normalize_percentage(draft.billing_percentage)
        )
        if draft.is_billable:
            self._validator.require_milestone_percentage(draft.project_id, percentage)
        else:
            self._validator.lock_project(draft.project_id)

        now = self._clock.now()
        milestone = Milestone(
            project_id=draft.project_id,
            title=draft.title,
            description=draft.description,
            planned_date=draft.planned_date,
            category=MilestoneCategory.GENERAL,
            status=draft.status,
            is_billable=draft.is_billable,
            billing_percentage=percentage,
            completed_at=now if draft.status == MilestoneStatus.COMPLETED else None,
            created_by_id=actor_id,
        )
        self.session.add(milestone)
        self.session.flush()
        logger.info(
            "milestone_created",
            extra={
                "project_id": str(milestone.project_id),
                "milestone_id": str(milestone.id),
                "is_billable": milestone.is_billable,
                "billing_percentage": milestone.billing_percentage,
            },
        )
        return milestone

    def update_milestone(
        self,
        milestone_id: UUID,
        patch: Mapping[str, Any],
        actor_id: UUID | None = None,
    ) -> Milestone:
        """
        Apply a partial update; percentage edits are validated and mirrored
        onto the linked task.
        """
        milestone = self._milestones.get_milestone(milestone_id)
        changes = {k: v for k, v in patch.items() if k in MILESTONE_UPDATABLE_FIELDS}
        if "billing_percentage" in changes:
            changes["billing_percentage"] = normalize_percentage(changes["billing_percentage"])
        changes = {k: v for k, v in changes.items() if getattr(milestone, k) != v}
        if not changes:
            return milestone

        is_billable = changes.get("is_billable", milestone.is_billable)
        percentage = changes.get("billing_percentage", milestone.billing_percentage)

        if ("billing_percentage" in changes or "is_billable" in changes) and is_billable:
            self._validator.require_milestone_percentage(
                milestone.project_id, percentage, exclude_milestone_id=milestone.id
            )

        for field_name, value in changes.items():
            if field_name in ("billing_percentage", "is_billable"):
                continue
            setattr(milestone, field_name, value)
        if changes.get("status") == MilestoneStatus.COMPLETED and milestone.completed_at is None:
            milestone.completed_at = self._clock.now()
        milestone.updated_by_id = actor_id
        self.session.flush()

        if "billing_percentage" in changes or "is_billable" in changes:
            self._milestones.on_milestone_billing_percentage_changed(
                milestone.id, percentage, is_billable if "is_billable" in changes else None
            )

        logger.info(
            "milestone_updated",
            extra={
                "project_id": str(milestone.project_id),
                "milestone_id": str(milestone.id),
                "fields": sorted(changes),
            },
        )
        return milestone

    def delete_milestone(self, milestone_id: UUID) -> None:
        """
        Raises:
            MilestoneLockedError: milestone is completed or billed.
        """
        milestone = self._milestones.get_milestone(milestone_id)
        if milestone.is_locked:
            raise MilestoneLockedError(milestone.id, milestone.status.value)

        self._milestones.unlink_milestone(milestone)
        self.session.execute(
            update(Invoice).where(Invoice.milestone_id == milestone.id).values(milestone_id=None)
        )
        self.session.delete(milestone)
        self.session.flush()
        logger.info(
            "milestone_deleted",
            extra={"project_id": str(milestone.project_id), "milestone_id": str(milestone_id)},
        )

    def complete_milestone(self, milestone_id: UUID) -> Milestone:
        return self._milestones.complete_milestone(milestone_id)

    def bill_milestone(self, milestone_id: UUID, actor_id: UUID | None = None) -> Invoice:
        """
        Draft the invoice for a completed, billable milestone.

        Raises:
            MilestoneNotBillableError: milestone is not billable.
            MilestoneStateError: milestone is not completed, or already billed.
        """
        milestone = self._milestones.get_milestone(milestone_id)
        if not milestone.is_billable:
            raise MilestoneNotBillableError(milestone.id)
        if milestone.status == MilestoneStatus.BILLED:
            raise MilestoneStateError(milestone.id, milestone.status.value, "Milestone is already billed")
        if milestone.status != MilestoneStatus.COMPLETED:
            raise MilestoneStateError(
                milestone.id,
                milestone.status.value,
                "Milestone must be completed before it can be billed",
            )
        return self._invoices.create_draft_invoice_for_milestone(milestone.id, actor_id=actor_id)
