"""
Organization Member Model
"""
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from orgtasks.database import Base
from orgtasks.utils.clock import utcnow


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    organization_id = Column(String(255), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    role = Column(String(50), default="member", nullable=False)  # member, admin, org:member, org:admin
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('organization_id', 'user_id', name='unique_organization_member'),
    )
