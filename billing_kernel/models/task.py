"""
Module: billing_kernel.models.task
Responsibility: ORM persistence for project tasks that may claim a share of
    the project's contract value.
Architecture position: Kernel > Models.

Invariants enforced:
    - billing_percentage is 0-100 (service layer) and passes the allocation
      validator before every write that sets or changes it.
    - milestone_id is the task's half of the task<->milestone link.  It is a
      plain nullable FK, synchronized explicitly by MilestoneManager rather
      than through cascading ORM relationships.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString
from billing_kernel.db.types import Percentage, status_enum
from billing_kernel.domain.statuses import BillingType, TaskStatus


class Task(TrackedBase):
    """Unit of project work; billable tasks own one auto-created milestone."""

    __tablename__ = "tasks"

    __table_args__ = (
        Index("idx_task_project", "project_id"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("projects.id"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[TaskStatus] = mapped_column(
        status_enum(TaskStatus),
        nullable=False,
        default=TaskStatus.TODO,
    )

    due_date: Mapped[datetime | None] = mapped_column(nullable=True)

    is_billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    billing_type: Mapped[BillingType] = mapped_column(
        status_enum(BillingType),
        nullable=False,
        default=BillingType.PERCENTAGE,
    )

    billing_percentage: Mapped[Percentage] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    # tasks <-> milestones reference each other; created via ALTER on PostgreSQL
    milestone_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("milestones.id", use_alter=True, name="fk_tasks_milestone_id"),
        nullable=True,
    )

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def counts_toward_ledger(self) -> bool:
        """True when this task consumes part of the project's 100%."""
        return self.is_billable and self.billing_type == BillingType.PERCENTAGE

    def __repr__(self) -> str:
        return f"<Task {self.title}: {self.billing_percentage}%>"
