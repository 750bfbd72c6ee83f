"""
Pydantic schemas for request/response validation
"""
from orgtasks.schemas.assignment import AssignmentStatusUpdate, TaskAssigneesAdd, TaskAssignmentResponse
from orgtasks.schemas.comment import TaskCommentCreate, TaskCommentResponse
from orgtasks.schemas.task import (
    TaskCreate,
    TaskDetailResponse,
    TaskResponse,
    TaskStatsResponse,
    TaskUpdate,
)
from orgtasks.schemas.member import MemberResponse
from orgtasks.schemas.notification import NotificationBatchResponse, SubscriptionCreate, SubscriptionResponse

__all__ = [
    "AssignmentStatusUpdate",
    "TaskAssigneesAdd",
    "TaskAssignmentResponse",
    "TaskCommentCreate",
    "TaskCommentResponse",
    "TaskCreate",
    "TaskDetailResponse",
    "TaskResponse",
    "TaskStatsResponse",
    "TaskUpdate",
    "MemberResponse",
    "NotificationBatchResponse",
    "SubscriptionCreate",
    "SubscriptionResponse",
]
