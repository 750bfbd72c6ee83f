"""Schemas for task assignments"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from orgtasks.models.task_assignment import AssignmentStatus


class AssignmentStatusUpdate(BaseModel):
    status: AssignmentStatus


class TaskAssigneesAdd(BaseModel):
    assignee_ids: List[str] = Field(..., min_length=1)


class TaskAssignmentResponse(BaseModel):
    id: int
    task_id: int
    assignee_id: str
    assigned_by: str
    status: AssignmentStatus
    completed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True
