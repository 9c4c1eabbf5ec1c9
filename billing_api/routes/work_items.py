"""
Task, milestone and billing-summary routes.

Percentage rejections surface as 400 with the validator's message verbatim
(see billing_api.errors).
"""

from typing import Any
from uuid import UUID

from fastapi import APIRouter, status
from pydantic import BaseModel

from billing_api.dependencies import (
    ActorDep,
    BillingSelectorDep,
    ConfigDep,
    InvoiceSelectorDep,
    SessionDep,
    WorkItemServiceDep,
)
from billing_api.schemas import (
    BillingSummaryOut,
    InvoiceOut,
    MilestoneCreate,
    MilestoneOut,
    MilestoneUpdate,
    TaskCompletionOut,
    TaskCreate,
    TaskOut,
    TaskUpdate,
)
from billing_kernel.exceptions import ProjectNotFoundError
from billing_kernel.logging_config import LogContext
from billing_kernel.models.project import Project
from billing_kernel.selectors.billing_selector import milestone_view, task_view
from billing_kernel.selectors.invoice_selector import invoice_view
from billing_kernel.services.work_item_service import MilestoneDraft, TaskDraft

router = APIRouter(tags=["work-items"])

# Columns that may be cleared with an explicit null
_NULLABLE_FIELDS = frozenset({"description", "due_date"})


def _patch(body: BaseModel) -> dict[str, Any]:
    return {
        key: value
        for key, value in body.model_dump(exclude_unset=True).items()
        if value is not None or key in _NULLABLE_FIELDS
    }


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.post(
    "/projects/{project_id}/tasks",
    response_model=TaskOut,
    status_code=status.HTTP_201_CREATED,
)
def create_task(
    project_id: UUID,
    body: TaskCreate,
    service: WorkItemServiceDep,
    actor_id: ActorDep,
):
    LogContext.set(project_id=str(project_id))
    task = service.create_task(TaskDraft(project_id=project_id, **body.model_dump()), actor_id)
    return task_view(task)


@router.patch("/tasks/{task_id}", response_model=TaskOut)
def update_task(task_id: UUID, body: TaskUpdate, service: WorkItemServiceDep, actor_id: ActorDep):
    return task_view(service.update_task(task_id, _patch(body), actor_id))


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: UUID, service: WorkItemServiceDep) -> None:
    service.delete_task(task_id)


@router.post("/tasks/{task_id}/complete", response_model=TaskCompletionOut)
def complete_task(task_id: UUID, service: WorkItemServiceDep, actor_id: ActorDep):
    result = service.complete_task(task_id, actor_id)
    return TaskCompletionOut(
        task=task_view(result.task),
        milestone=milestone_view(result.milestone) if result.milestone is not None else None,
        invoice=invoice_view(result.invoice) if result.invoice is not None else None,
    )


@router.post(
    "/tasks/{task_id}/convert-to-milestone",
    response_model=MilestoneOut,
    status_code=status.HTTP_201_CREATED,
)
def convert_task_to_milestone(task_id: UUID, service: WorkItemServiceDep, actor_id: ActorDep):
    return milestone_view(service.convert_task_to_milestone(task_id, actor_id))


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------


@router.post(
    "/projects/{project_id}/milestones",
    response_model=MilestoneOut,
    status_code=status.HTTP_201_CREATED,
)
def create_milestone(
    project_id: UUID,
    body: MilestoneCreate,
    service: WorkItemServiceDep,
    actor_id: ActorDep,
):
    LogContext.set(project_id=str(project_id))
    milestone = service.create_milestone(
        MilestoneDraft(project_id=project_id, **body.model_dump()), actor_id
    )
    return milestone_view(milestone)


@router.patch("/milestones/{milestone_id}", response_model=MilestoneOut)
def update_milestone(
    milestone_id: UUID,
    body: MilestoneUpdate,
    service: WorkItemServiceDep,
    actor_id: ActorDep,
):
    return milestone_view(service.update_milestone(milestone_id, _patch(body), actor_id))


@router.delete("/milestones/{milestone_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_milestone(milestone_id: UUID, service: WorkItemServiceDep) -> None:
    service.delete_milestone(milestone_id)


@router.post("/milestones/{milestone_id}/complete", response_model=MilestoneOut)
def complete_milestone(milestone_id: UUID, service: WorkItemServiceDep):
    return milestone_view(service.complete_milestone(milestone_id))


@router.post(
    "/milestones/{milestone_id}/bill",
    response_model=InvoiceOut,
    status_code=status.HTTP_201_CREATED,
)
def bill_milestone(
    milestone_id: UUID,
    service: WorkItemServiceDep,
    selector: InvoiceSelectorDep,
    actor_id: ActorDep,
):
    invoice = service.bill_milestone(milestone_id, actor_id)
    return selector.get(invoice.id)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@router.get("/projects/{project_id}/billing-summary", response_model=BillingSummaryOut)
def billing_summary(
    project_id: UUID,
    session: SessionDep,
    selector: BillingSelectorDep,
    config: ConfigDep,
):
    if session.get(Project, project_id) is None:
        raise ProjectNotFoundError(project_id)
    totals = selector.ledger(project_id, cap=config.ledger.percentage_cap).totals()
    items = selector.billable_work_items(project_id)
    return BillingSummaryOut(
        project_id=project_id,
        totals=totals,
        tasks=list(items.tasks),
        milestones=list(items.milestones),
    )
