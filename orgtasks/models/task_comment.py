"""Task comment model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey

from orgtasks.database import Base
from orgtasks.utils.clock import utcnow


class TaskComment(Base):
    __tablename__ = "task_comments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    author_id = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
