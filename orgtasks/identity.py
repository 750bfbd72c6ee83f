"""
Identity and role lookup.

The engine only depends on the ``IdentityProvider`` protocol; the database
implementation reads the ``organization_members`` table.
"""
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from sqlalchemy.orm import Session

from orgtasks.models import OrganizationMember

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    ADMIN = "admin"
    MEMBER = "member"


_ADMIN_ROLE_NAMES = {"admin", "org:admin"}


def parse_role(raw: Optional[str]) -> Role:
    """Map a raw membership role string to a ``Role``; anything unknown is a member."""
    if raw and raw.strip().lower() in _ADMIN_ROLE_NAMES:
        return Role.ADMIN
    return Role.MEMBER


@dataclass(frozen=True)
class MemberInfo:
    user_id: str
    display_name: Optional[str]
    role: Role


class IdentityProvider(Protocol):
    def role_of(self, organization_id: str, identity: Optional[str]) -> Role: ...

    def members_of(self, organization_id: str) -> List[MemberInfo]: ...


class DatabaseIdentityProvider:
    """Resolve roles and rosters from ``OrganizationMember`` rows."""

    def __init__(self, db: Session):
        self.db = db

    def role_of(self, organization_id: str, identity: Optional[str]) -> Role:
        if not identity:
            return Role.MEMBER

        membership = self.db.query(OrganizationMember).filter(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == identity,
        ).first()
        if membership is None:
            logger.debug("No membership for user=%s org=%s; treating as member", identity, organization_id)
            return Role.MEMBER
        return parse_role(membership.role)

    def members_of(self, organization_id: str) -> List[MemberInfo]:
        rows = (
            self.db.query(OrganizationMember)
            .filter(OrganizationMember.organization_id == organization_id)
            .order_by(OrganizationMember.created_at.asc(), OrganizationMember.id.asc())
            .all()
        )
        return [
            MemberInfo(user_id=row.user_id, display_name=row.display_name, role=parse_role(row.role))
            for row in rows
        ]
