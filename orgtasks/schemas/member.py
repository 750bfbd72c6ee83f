"""Schemas for organization members"""
from typing import Optional

from pydantic import BaseModel

from orgtasks.identity import Role


class MemberResponse(BaseModel):
    user_id: str
    display_name: Optional[str]
    role: Role

    class Config:
        from_attributes = True
