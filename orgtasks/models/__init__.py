"""orgtasks Database Models"""
from orgtasks.models.task import Task, TaskPriority, TaskStatus
from orgtasks.models.task_assignment import AssignmentStatus, TaskAssignment
from orgtasks.models.task_comment import TaskComment
from orgtasks.models.organization_member import OrganizationMember

__all__ = [
    "Task",
    "TaskPriority",
    "TaskStatus",
    "TaskAssignment",
    "AssignmentStatus",
    "TaskComment",
    "OrganizationMember",
]
