"""
BillingAllocationValidator -- accept or reject proposed billing percentages.

Responsibility:
    Gatekeeper for every write that sets or changes a task's or milestone's
    billing percentage.  Locks the project row, reads the project's billable
    items through BillingSelector, and asks the BillingLedger whether the
    proposal fits.

Architecture position:
    Kernel > Services.  Called by WorkItemService before any insert/update of
    a billing percentage, inside the same transaction as that write.

Invariants enforced:
    PERCENTAGE_BUDGET -- the project row is locked (SELECT ... FOR UPDATE)
        before the ledger read, so two concurrent proposals for one project
        are serialized: the second one reads the first one's committed
        allocation instead of both seeing the same headroom.

Failure modes:
    - BillingPercentageExceededError: proposal would exceed 100%.  The message
      carries the current total and the remaining allowance.
    - InvalidPercentageError: proposal is not a decimal in 0-100.
    - ProjectNotFoundError: project does not exist.

Audit relevance:
    Every rejection is logged as ``billing_allocation_rejected`` with the
    project id, proposal, and totals.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.db.types import HUNDRED, ZERO, parse_decimal, round_percentage
from billing_kernel.domain.billing_ledger import AllocationCheck
from billing_kernel.exceptions import (
    BillingPercentageExceededError,
    InvalidPercentageError,
    ProjectNotFoundError,
)
from billing_kernel.invariants import BillingInvariant
from billing_kernel.logging_config import get_logger
from billing_kernel.models.project import Project
from billing_kernel.selectors.billing_selector import BillingSelector
from billing_kernel.services.base import BaseService

logger = get_logger("services.allocation_validator")


def normalize_percentage(value: object) -> Decimal:
    """
    Parse and range-check a billing percentage.

    Raises:
        InvalidPercentageError: not a decimal, or outside 0-100.
    """
    try:
        pct = parse_decimal(value)
    except ValueError as exc:
        raise InvalidPercentageError(value, str(exc)) from exc
    if pct < ZERO or pct > HUNDRED:
        raise InvalidPercentageError(value)
    return round_percentage(pct)


class BillingAllocationValidator(BaseService):
    """
    Validates billing percentages against the project's 100% budget.

    Contract:
        ``validate_*`` returns an AllocationCheck; ``require_*`` raises on
        rejection.  Both lock the project row for the remainder of the
        caller's transaction.

    Non-goals:
        - Does NOT write the percentage; the caller does, in the same
          transaction, after this returns.
    """

    def __init__(self, session: Session, cap: Decimal = HUNDRED):
        super().__init__(session)
        self._cap = cap
        self._selector = BillingSelector(session)

    def lock_project(self, project_id: UUID) -> Project:
        """
        Lock the project row for the rest of the transaction.

        Raises:
            ProjectNotFoundError: project does not exist.
        """
        project = self.session.execute(
            select(Project)
            .where(Project.id == project_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    def _check(
        self,
        project_id: UUID,
        proposed: object,
        exclude_task_id: UUID | None,
        exclude_milestone_id: UUID | None,
    ) -> AllocationCheck:
        pct = normalize_percentage(proposed)
        self.lock_project(project_id)
        ledger = self._selector.ledger(project_id, cap=self._cap)
        return ledger.check(pct, exclude_task_id, exclude_milestone_id)

    def validate_task_percentage(
        self,
        project_id: UUID,
        proposed: object,
        exclude_task_id: UUID | None = None,
    ) -> AllocationCheck:
        return self._check(project_id, proposed, exclude_task_id, None)

    def validate_milestone_percentage(
        self,
        project_id: UUID,
        proposed: object,
        exclude_milestone_id: UUID | None = None,
    ) -> AllocationCheck:
        return self._check(project_id, proposed, None, exclude_milestone_id)

    def _require(self, project_id: UUID, check: AllocationCheck, item_kind: str) -> AllocationCheck:
        if check.is_valid:
            logger.debug(
                "billing_allocation_accepted",
                extra={
                    "project_id": str(project_id),
                    "item_kind": item_kind,
                    "proposed": check.proposed,
                    "current_total": check.current_total,
                },
            )
            return check
        logger.warning(
            "billing_allocation_rejected",
            extra={
                "project_id": str(project_id),
                "item_kind": item_kind,
                "proposed": check.proposed,
                "current_total": check.current_total,
                "remaining": check.remaining,
                "max_allowed": check.max_allowed,
                "invariant": BillingInvariant.PERCENTAGE_BUDGET.value,
            },
        )
        raise BillingPercentageExceededError(
            project_id=project_id,
            proposed=check.proposed,
            current_total=check.current_total,
            remaining=check.remaining,
            max_allowed=check.max_allowed,
            cap=self._cap,
        )

    def require_task_percentage(
        self,
        project_id: UUID,
        proposed: object,
        exclude_task_id: UUID | None = None,
    ) -> AllocationCheck:
        check = self.validate_task_percentage(project_id, proposed, exclude_task_id)
        return self._require(project_id, check, "task")

    def require_milestone_percentage(
        self,
        project_id: UUID,
        proposed: object,
        exclude_milestone_id: UUID | None = None,
    ) -> AllocationCheck:
        check = self.validate_milestone_percentage(project_id, proposed, exclude_milestone_id)
        return self._require(project_id, check, "milestone")
