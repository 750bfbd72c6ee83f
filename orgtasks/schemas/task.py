"""Schemas for tasks"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from orgtasks.models.task import TaskPriority, TaskStatus
from orgtasks.schemas.assignment import TaskAssignmentResponse
from orgtasks.schemas.comment import TaskCommentResponse


class TaskCreate(BaseModel):
    organization_id: str = Field(..., min_length=1)
    room_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    assignee_ids: List[str] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None


class TaskResponse(BaseModel):
    id: int
    organization_id: str
    room_id: Optional[str]
    title: str
    description: Optional[str]
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime]
    created_by: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TaskDetailResponse(TaskResponse):
    assignments: List[TaskAssignmentResponse] = Field(default_factory=list)
    comments: List[TaskCommentResponse] = Field(default_factory=list)


class TaskStatsResponse(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
