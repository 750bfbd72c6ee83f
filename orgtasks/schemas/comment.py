"""Schemas for task comments"""
from datetime import datetime

from pydantic import BaseModel


class TaskCommentCreate(BaseModel):
    content: str


class TaskCommentResponse(BaseModel):
    id: int
    task_id: int
    author_id: str
    content: str
    created_at: datetime

    class Config:
        from_attributes = True
