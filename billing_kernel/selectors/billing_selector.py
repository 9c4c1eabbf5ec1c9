"""
Module: billing_kernel.selectors.billing_selector
Responsibility: Read a project's billable tasks and milestones and build the
    BillingLedger value object from them (the Percentage Ledger read path).
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Totals are always computed from the item rows read in the caller's
      transaction.  When a write follows, the caller locks the project row
      first (BillingAllocationValidator), so the read cannot go stale before
      the write commits.
"""

from uuid import UUID

from sqlalchemy import select

from billing_kernel.db.types import HUNDRED
from billing_kernel.domain.billing_ledger import (
    BillableItem,
    BillingLedger,
    ItemKind,
    LedgerTotals,
)
from billing_kernel.domain.dtos import (
    BillableWorkItems,
    BillingSummary,
    MilestoneView,
    TaskView,
)
from billing_kernel.domain.statuses import BillingType
from billing_kernel.models.milestone import Milestone
from billing_kernel.models.task import Task
from billing_kernel.selectors.base import BaseSelector


def task_view(task: Task) -> TaskView:
    return TaskView(
        id=task.id,
        project_id=task.project_id,
        title=task.title,
        status=task.status,
        is_billable=task.is_billable,
        billing_type=task.billing_type,
        billing_percentage=task.billing_percentage,
        milestone_id=task.milestone_id,
        due_date=task.due_date,
        completed_at=task.completed_at,
    )


def milestone_view(milestone: Milestone) -> MilestoneView:
    return MilestoneView(
        id=milestone.id,
        project_id=milestone.project_id,
        title=milestone.title,
        category=milestone.category,
        status=milestone.status,
        is_billable=milestone.is_billable,
        billing_percentage=milestone.billing_percentage,
        task_id=milestone.task_id,
        planned_date=milestone.planned_date,
        completed_at=milestone.completed_at,
        billed_at=milestone.billed_at,
    )


class BillingSelector(BaseSelector):
    """Percentage-ledger reads for one project at a time."""

    def _billable_tasks(self, project_id: UUID) -> list[Task]:
        return list(
            self.session.scalars(
                select(Task)
                .where(
                    Task.project_id == project_id,
                    Task.is_billable.is_(True),
                    Task.billing_type == BillingType.PERCENTAGE,
                )
                .order_by(Task.created_at, Task.id)
            )
        )

    def _billable_milestones(self, project_id: UUID) -> list[Milestone]:
        return list(
            self.session.scalars(
                select(Milestone)
                .where(
                    Milestone.project_id == project_id,
                    Milestone.is_billable.is_(True),
                )
                .order_by(Milestone.planned_date, Milestone.id)
            )
        )

    def ledger(self, project_id: UUID, cap=HUNDRED) -> BillingLedger:
        """Build the ledger value object from the project's billable rows."""
        tasks = tuple(
            BillableItem(ItemKind.TASK, t.id, t.billing_percentage, t.milestone_id)
            for t in self._billable_tasks(project_id)
        )
        milestones = tuple(
            BillableItem(ItemKind.MILESTONE, m.id, m.billing_percentage, m.task_id)
            for m in self._billable_milestones(project_id)
        )
        return BillingLedger(project_id=project_id, tasks=tasks, milestones=milestones, cap=cap)

    def compute_totals(
        self,
        project_id: UUID,
        exclude_task_id: UUID | None = None,
        exclude_milestone_id: UUID | None = None,
    ) -> LedgerTotals:
        """from_tasks, from_milestones, grand_total and remaining for a project."""
        return self.ledger(project_id).totals(exclude_task_id, exclude_milestone_id)

    def billable_work_items(self, project_id: UUID) -> BillableWorkItems:
        return BillableWorkItems(
            project_id=project_id,
            tasks=tuple(task_view(t) for t in self._billable_tasks(project_id)),
            milestones=tuple(milestone_view(m) for m in self._billable_milestones(project_id)),
        )

    def summary(self, project_id: UUID) -> BillingSummary:
        return BillingSummary(
            project_id=project_id,
            totals=self.compute_totals(project_id),
            items=self.billable_work_items(project_id),
        )
