"""Organization roster endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from orgtasks.dependencies import get_current_user, get_task_engine
from orgtasks.schemas import MemberResponse
from orgtasks.services.task_engine import TaskEngine

router = APIRouter()


@router.get("/{organization_id}/assignable", response_model=List[MemberResponse])
async def assignable_members(
    organization_id: str,
    present: Optional[List[str]] = Query(None, description="Identities currently present in the room"),
    current_user: Optional[str] = Depends(get_current_user),
    engine: TaskEngine = Depends(get_task_engine),
):
    """Members that can be picked as assignees (admins excluded)."""
    engine.ensure_member(current_user, organization_id)
    return engine.assignable_members(organization_id, present_ids=present)
