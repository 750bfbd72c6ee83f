"""Version 1 of the HTTP API."""
from fastapi import APIRouter

from orgtasks.api.v1 import comments, notifications, organizations, tasks

api_router = APIRouter()
api_router.include_router(tasks.router, prefix="/tasks", tags=["tasks"])
api_router.include_router(comments.router, prefix="/tasks", tags=["comments"])
api_router.include_router(organizations.router, prefix="/organizations", tags=["organizations"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])

__all__ = ["api_router"]
