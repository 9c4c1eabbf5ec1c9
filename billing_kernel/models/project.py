"""
Module: billing_kernel.models.project
Responsibility: ORM persistence for projects -- the owner of the 100% billing
    allocation and of every task, milestone, and invoice.
Architecture position: Kernel > Models.  May import from db/ and domain
    enums only.

Invariants enforced:
    - The sum of billing percentages over a project's billable items never
      exceeds 100.  The row itself stores no running total; the project row
      is the lock target that serializes every percentage mutation.

Audit relevance:
    Projects are created by an external workflow.  This kernel only moves
    status from planning to in_progress on the first fully paid invoice.
"""

from decimal import Decimal

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import Amount, status_enum
from billing_kernel.domain.statuses import ProjectStatus


class Project(TrackedBase):
    """
    Construction project whose contract value is allocated by percentage.

    Non-goals:
        - Cascade delete of owned rows belongs to the external project workflow.
    """

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Contract value; milestone invoice amounts derive from it
    total_budget: Mapped[Amount] = mapped_column(nullable=False, default=Decimal("0"))

    status: Mapped[ProjectStatus] = mapped_column(
        status_enum(ProjectStatus),
        nullable=False,
        default=ProjectStatus.PLANNING,
    )

    def __repr__(self) -> str:
        return f"<Project {self.name}: {self.status.value}>"
