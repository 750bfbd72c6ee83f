"""Task comment endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, status

from orgtasks.dependencies import get_current_user, get_task_engine
from orgtasks.schemas import TaskCommentCreate, TaskCommentResponse
from orgtasks.services.task_engine import TaskEngine

router = APIRouter()


@router.get("/{task_id}/comments", response_model=List[TaskCommentResponse])
async def list_task_comments(
    task_id: int,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """Return all comments for a task, oldest first."""
    return engine.list_comments(current_user, task_id)


@router.post("/{task_id}/comments", response_model=TaskCommentResponse, status_code=status.HTTP_201_CREATED)
async def create_comment(
    task_id: int,
    comment_data: TaskCommentCreate,
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    return engine.add_comment(current_user, task_id, comment_data.content)
