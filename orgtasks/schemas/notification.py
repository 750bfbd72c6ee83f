"""Schemas for new-task notification subscriptions"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from orgtasks.schemas.task import TaskDetailResponse


class SubscriptionCreate(BaseModel):
    organization_id: str = Field(..., min_length=1)
    room_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str
    organization_id: str
    room_id: Optional[str]
    last_checked: datetime

    class Config:
        from_attributes = True


class NotificationBatchResponse(BaseModel):
    subscription_id: str
    last_checked: datetime
    tasks: List[TaskDetailResponse] = Field(default_factory=list)
