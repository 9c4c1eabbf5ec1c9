"""
BillingLedger -- per-project percentage allocation value object.

Responsibility:
    Given the billable items of one project, compute how much of the
    project's contract value is already allocated and decide whether a
    proposed billing percentage fits.  Totals are recomputed from the item
    rows on every use; no running total is ever cached.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The items are read by
    BillingSelector inside the caller's transaction (under the project row
    lock when a write follows) and handed to this module.

Invariants enforced:
    - PERCENTAGE_BUDGET: ``check()`` accepts a proposal only when the total
      excluding the item being edited plus the proposal stays <= the cap.
    - Comparisons are made on values rounded to 2 decimal places.

Counting rules:
    - Tasks count when billable with billing_type=percentage.
    - Billable milestones count, EXCEPT a milestone linked to a counted task:
      the pair is one allocation and the task carries it.
    - Excluding a task also excludes its linked milestone and vice versa, so
      an update is never measured against its own old value.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_kernel.db.types import HUNDRED, ZERO, round_percentage


class ItemKind(str, Enum):
    TASK = "task"
    MILESTONE = "milestone"


@dataclass(frozen=True)
class BillableItem:
    """
    One billable task or milestone as seen by the ledger.

    ``linked_id`` is the partner on the other side of the task<->milestone
    link (task.milestone_id or milestone.task_id).
    """

    kind: ItemKind
    item_id: UUID
    percentage: Decimal
    linked_id: UUID | None = None


@dataclass(frozen=True)
class LedgerTotals:
    from_tasks: Decimal
    from_milestones: Decimal
    grand_total: Decimal
    remaining: Decimal


@dataclass(frozen=True)
class AllocationCheck:
    """
    Result of checking a proposed billing percentage.

    ``current_total``/``remaining`` describe the project as stored now;
    ``max_allowed`` is the largest value the edited item may take.
    """

    is_valid: bool
    proposed: Decimal
    current_total: Decimal
    remaining: Decimal
    max_allowed: Decimal


@dataclass(frozen=True)
class BillingLedger:
    """
    Billable items of one project.

    Contract:
        Built from counted tasks and billable milestones.  All methods are
        pure; the same ledger always yields the same totals.
    """

    project_id: UUID
    tasks: tuple[BillableItem, ...] = ()
    milestones: tuple[BillableItem, ...] = ()
    cap: Decimal = HUNDRED

    def totals(
        self,
        exclude_task_id: UUID | None = None,
        exclude_milestone_id: UUID | None = None,
    ) -> LedgerTotals:
        """Sum counted items, optionally leaving out one task and/or milestone."""
        excluded_tasks = {exclude_task_id} - {None}
        excluded_milestones = {exclude_milestone_id} - {None}

        for task in self.tasks:
            if task.item_id == exclude_task_id and task.linked_id is not None:
                excluded_milestones.add(task.linked_id)
            if exclude_milestone_id is not None and task.linked_id == exclude_milestone_id:
                excluded_tasks.add(task.item_id)
        for milestone in self.milestones:
            if milestone.item_id == exclude_milestone_id and milestone.linked_id is not None:
                excluded_tasks.add(milestone.linked_id)
            if exclude_task_id is not None and milestone.linked_id == exclude_task_id:
                excluded_milestones.add(milestone.item_id)

        counted_task_ids = {task.item_id for task in self.tasks}

        from_tasks = sum(
            (t.percentage for t in self.tasks if t.item_id not in excluded_tasks),
            ZERO,
        )
        from_milestones = sum(
            (
                m.percentage
                for m in self.milestones
                if m.item_id not in excluded_milestones
                and (m.linked_id is None or m.linked_id not in counted_task_ids)
            ),
            ZERO,
        )
        grand_total = round_percentage(from_tasks + from_milestones)
        return LedgerTotals(
            from_tasks=round_percentage(from_tasks),
            from_milestones=round_percentage(from_milestones),
            grand_total=grand_total,
            remaining=max(ZERO, round_percentage(self.cap - grand_total)),
        )

    def check(
        self,
        proposed: Decimal,
        exclude_task_id: UUID | None = None,
        exclude_milestone_id: UUID | None = None,
    ) -> AllocationCheck:
        """Decide whether ``proposed`` fits next to everything else."""
        proposed = round_percentage(proposed)
        current = self.totals()
        others = self.totals(exclude_task_id, exclude_milestone_id)
        max_allowed = max(ZERO, round_percentage(self.cap - others.grand_total))

        is_valid = proposed <= ZERO or others.grand_total + proposed <= self.cap
        return AllocationCheck(
            is_valid=is_valid,
            proposed=proposed,
            current_total=current.grand_total,
            remaining=current.remaining,
            max_allowed=max_allowed,
        )
