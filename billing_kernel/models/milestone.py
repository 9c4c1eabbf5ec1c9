"""
Module: billing_kernel.models.milestone
Responsibility: ORM persistence for project milestones -- the billing unit
    that becomes a draft invoice once completed.
Architecture position: Kernel > Models.

Invariants enforced:
    - A milestone linked to a task (task_id set) carries that task's billing
      percentage.  Enforced by MilestoneManager.sync_billing_percentage.
    - Completed or billed milestones cannot be deleted.

Audit relevance:
    completed_at and billed_at record when work was accepted and when the
    client's payment for it cleared.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import Percentage, status_enum
from billing_kernel.domain.statuses import MilestoneCategory, MilestoneStatus


class Milestone(TrackedBase):
    """Project milestone, either standalone or the billing counterpart of a task."""

    __tablename__ = "milestones"

    __table_args__ = (
        Index("idx_milestone_project", "project_id"),
        Index("idx_milestone_task", "task_id"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("projects.id"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    planned_date: Mapped[datetime] = mapped_column(nullable=False)

    category: Mapped[MilestoneCategory] = mapped_column(
        status_enum(MilestoneCategory),
        nullable=False,
        default=MilestoneCategory.GENERAL,
    )

    status: Mapped[MilestoneStatus] = mapped_column(
        status_enum(MilestoneStatus),
        nullable=False,
        default=MilestoneStatus.PENDING,
    )

    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    billing_percentage: Mapped[Percentage] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    task_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("tasks.id", use_alter=True, name="fk_milestones_task_id"),
        nullable=True,
    )

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    billed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_locked(self) -> bool:
        """Completed and billed milestones are part of the billing record."""
        return self.status in (MilestoneStatus.COMPLETED, MilestoneStatus.BILLED)

    def __repr__(self) -> str:
        return f"<Milestone {self.title}: {self.status.value}>"
