"""Task and assignment endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from orgtasks.dependencies import get_current_user, get_task_engine
from orgtasks.schemas import (
    AssignmentStatusUpdate,
    TaskAssigneesAdd,
    TaskAssignmentResponse,
    TaskCreate,
    TaskDetailResponse,
    TaskResponse,
    TaskStatsResponse,
    TaskUpdate,
)
from orgtasks.services.task_engine import TaskEngine

router = APIRouter()


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    task_data: TaskCreate,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """Create a task and one assignment per assignee."""
    return engine.create_task(current_user, task_data)


@router.get("", response_model=List[TaskDetailResponse])
async def list_tasks(
    organization_id: str = Query(..., min_length=1),
    room_id: Optional[str] = Query(None, description="Only return tasks of this room"),
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """List the tasks the current user may see, newest first."""
    return engine.list_tasks(current_user, organization_id, room_id=room_id)


@router.get("/stats", response_model=TaskStatsResponse)
async def task_stats(
    organization_id: str = Query(..., min_length=1),
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """Task counts by status for dashboard summaries."""
    engine.ensure_member(current_user, organization_id)
    return engine.compute_stats(organization_id)


@router.get("/{task_id}", response_model=TaskDetailResponse)
async def get_task(
    task_id: int,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    return engine.get_task(current_user, task_id)


@router.patch("/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: int,
    task_update: TaskUpdate,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """Edit task details or set its status directly."""
    return engine.update_task(current_user, task_id, task_update)


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(
    task_id: int,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    engine.delete_task(current_user, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{task_id}/assignments/{assignee_id}", response_model=TaskAssignmentResponse)
async def update_assignment_status(
    task_id: int,
    assignee_id: str,
    status_update: AssignmentStatusUpdate,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """Set an assignment's status; the task completes once every assignment has."""
    return engine.update_assignment_status(current_user, task_id, assignee_id, status_update.status)


@router.post(
    "/{task_id}/assignments",
    response_model=List[TaskAssignmentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def add_assignees(
    task_id: int,
    assignees: TaskAssigneesAdd,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    return engine.assign_task_to_users(current_user, task_id, assignees.assignee_ids)


@router.delete("/{task_id}/assignments/{assignee_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_assignee(
    task_id: int,
    assignee_id: str,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    engine.remove_task_assignment(current_user, task_id, assignee_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
