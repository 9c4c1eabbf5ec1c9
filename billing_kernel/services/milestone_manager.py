"""
MilestoneManager -- task<->milestone billing linkage.

Responsibility:
    Creates the milestone that is the billing counterpart of a billable task,
    keeps the pair's billing percentage in sync, and moves milestones through
    completed and billed.

Architecture position:
    Kernel > Services.  Called by WorkItemService (task and milestone edits)
    and WebhookReconciler (milestone billed when its invoice is paid).

Invariants enforced:
    TASK_MILESTONE_SYNC -- ``sync_billing_percentage`` is the single operation
        that writes a linked pair's percentage.  Both the "task changed" and
        the "milestone changed" triggers call it, so the two sides cannot drift.

Failure modes:
    - Auto-creating a milestone for a new billable task is best-effort: it runs
      in a SAVEPOINT and on failure logs ``billing_milestone_link_failed`` and
      leaves the task unlinked.  The task insert itself is not rolled back.
      The percentage budget was already validated for the task.
    - TaskNotFoundError / MilestoneNotFoundError on unknown ids.
    - MilestoneStateError on completing an already completed milestone.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing_kernel.domain.clock import Clock
from billing_kernel.domain.dtos import BillableWorkItems
from billing_kernel.domain.statuses import MilestoneCategory, MilestoneStatus
from billing_kernel.exceptions import (
    MilestoneNotFoundError,
    MilestoneStateError,
    TaskNotFoundError,
)
from billing_kernel.invariants import BillingInvariant
from billing_kernel.logging_config import get_logger
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.task import Task
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.base import BaseService

logger = get_logger("services.milestone_manager")


class MilestoneManager(BaseService):
    """
    Owns the billing link between tasks and milestones.

    Guarantees:
        - A billable task created through ``on_task_created`` ends up with a
          milestone (category billable_task, same percentage, planned date =
          task due date or now) unless creation failed and was logged.
        - After ``sync_billing_percentage`` both sides of a link carry the
          same percentage and billable flag.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)
        self._selector = BillingSelector(session)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_task(self, task_id: UUID) -> Task:
        task = self.session.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def get_milestone(self, milestone_id: UUID) -> Milestone:
        milestone = self.session.get(Milestone, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(milestone_id)
        return milestone

    def list_billable(self, project_id: UUID) -> BillableWorkItems:
        """Billable percentage tasks and billable milestones of a project."""
        return self._selector.billable_work_items(project_id)

    # ------------------------------------------------------------------
    # Linkage
    # ------------------------------------------------------------------

    def create_linked_milestone(
        self,
        task: Task,
        category: MilestoneCategory = MilestoneCategory.BILLABLE_TASK,
        actor_id: UUID | None = None,
        title: str | None = None,
        description: str | None = None,
    ) -> Milestone:
        """Insert the billing milestone for ``task`` and link both directions."""
        milestone = Milestone(
            project_id=task.project_id,
            title=title or task.title,
            description=description or f"Billing milestone for task: {task.title}",
            planned_date=task.due_date or self._clock.now(),
            category=category,
            status=MilestoneStatus.PENDING,
            is_billable=True,
            billing_percentage=task.billing_percentage,
            task_id=task.id,
            created_by_id=actor_id,
        )
        self.session.add(milestone)
        self.session.flush()
        task.milestone_id = milestone.id
        self.session.flush()
        logger.info(
            "billing_milestone_linked",
            extra={
                "project_id": str(task.project_id),
                "task_id": str(task.id),
                "milestone_id": str(milestone.id),
                "category": category.value,
                "billing_percentage": milestone.billing_percentage,
            },
        )
        return milestone

    def on_task_created(self, task: Task, actor_id: UUID | None = None) -> Milestone | None:
        """
        Create the linked milestone for a new billable task.

        Returns the milestone, or None when the task is not billable or the
        milestone could not be created (logged, task left unlinked).
        """
        if not task.is_billable or task.milestone_id is not None:
            return None

        savepoint = self.session.begin_nested()
        try:
            milestone = self.create_linked_milestone(task, actor_id=actor_id)
        except SQLAlchemyError:
            savepoint.rollback()
            logger.error(
                "billing_milestone_link_failed",
                extra={"project_id": str(task.project_id), "task_id": str(task.id)},
                exc_info=True,
            )
            return None
        savepoint.commit()
        return milestone

    def sync_billing_percentage(
        self,
        task: Task | None,
        milestone: Milestone | None,
        percentage: Decimal,
        is_billable: bool | None = None,
    ) -> None:
        """Write ``percentage`` (and optionally the billable flag) to both sides of a link."""
        for item in (task, milestone):
            if item is None:
                continue
            item.billing_percentage = percentage
            if is_billable is not None:
                item.is_billable = is_billable
        self.session.flush()
        logger.debug(
            "billing_percentage_synced",
            extra={
                "task_id": str(task.id) if task is not None else None,
                "milestone_id": str(milestone.id) if milestone is not None else None,
                "billing_percentage": percentage,
                "invariant": BillingInvariant.TASK_MILESTONE_SYNC.value,
            },
        )

    def on_task_billing_percentage_changed(
        self,
        task_id: UUID,
        new_percentage: Decimal,
        is_billable: bool | None = None,
    ) -> Milestone | None:
        """Propagate a task's new percentage to its linked milestone, if any."""
        task = self.get_task(task_id)
        milestone = (
            self.session.get(Milestone, task.milestone_id)
            if task.milestone_id is not None
            else None
        )
        self.sync_billing_percentage(task, milestone, new_percentage, is_billable)
        return milestone

    def on_milestone_billing_percentage_changed(
        self,
        milestone_id: UUID,
        new_percentage: Decimal,
        is_billable: bool | None = None,
    ) -> Task | None:
        """Propagate a milestone's new percentage to its linked task, if any."""
        milestone = self.get_milestone(milestone_id)
        task = (
            self.session.get(Task, milestone.task_id)
            if milestone.task_id is not None
            else None
        )
        self.sync_billing_percentage(task, milestone, new_percentage, is_billable)
        return task

    def unlink_task(self, task: Task) -> None:
        """Null out every milestone reference to ``task``."""
        self.session.execute(
            update(Milestone).where(Milestone.task_id == task.id).values(task_id=None)
        )
        task.milestone_id = None
        self.session.flush()

    def unlink_milestone(self, milestone: Milestone) -> None:
        """Null out every task reference to ``milestone``."""
        self.session.execute(
            update(Task).where(Task.milestone_id == milestone.id).values(milestone_id=None)
        )
        milestone.task_id = None
        self.session.flush()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def complete_milestone(self, milestone_id: UUID) -> Milestone:
        """
        Raises:
            MilestoneStateError: milestone is already completed or billed.
        """
        milestone = self.get_milestone(milestone_id)
        if milestone.is_locked:
            raise MilestoneStateError(
                milestone.id,
                milestone.status.value,
                f"Milestone is already {milestone.status.value}",
            )
        milestone.status = MilestoneStatus.COMPLETED
        milestone.completed_at = self._clock.now()
        self.session.flush()
        logger.info(
            "milestone_completed",
            extra={"project_id": str(milestone.project_id), "milestone_id": str(milestone.id)},
        )
        return milestone

    def mark_billed(self, milestone_id: UUID, billed_at: datetime | None = None) -> Milestone:
        """Mark a milestone billed.  Already billed milestones are left as they are."""
        milestone = self.get_milestone(milestone_id)
        if milestone.status == MilestoneStatus.BILLED:
            logger.debug(
                "milestone_already_billed",
                extra={"milestone_id": str(milestone.id)},
            )
            return milestone
        milestone.status = MilestoneStatus.BILLED
        milestone.billed_at = billed_at or self._clock.now()
        if milestone.completed_at is None:
            milestone.completed_at = milestone.billed_at
        self.session.flush()
        logger.info(
            "milestone_billed",
            extra={
                "project_id": str(milestone.project_id),
                "milestone_id": str(milestone.id),
                "billed_at": milestone.billed_at,
            },
        )
        return milestone
