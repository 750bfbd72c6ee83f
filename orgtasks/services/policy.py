"""
Visibility and access rules for tasks and assignments.

Pure functions of (caller, role, task, assignments). The ``ensure_*`` helpers
raise ``Forbidden`` so the engine can apply a rule in one line.
"""
from typing import Iterable, List, Optional, Sequence, TypeVar

from orgtasks.exceptions import Forbidden
from orgtasks.identity import Role
from orgtasks.models import Task, TaskAssignment

T = TypeVar("T")

# Fields of a task only an admin may edit
DETAIL_FIELDS = frozenset({"title", "description", "priority", "due_date"})


def is_assignee(caller_id: Optional[str], assignments: Iterable[TaskAssignment]) -> bool:
    if not caller_id:
        return False
    return any(assignment.assignee_id == caller_id for assignment in assignments)


def can_view_task(caller_id: Optional[str], role: Role, assignments: Iterable[TaskAssignment]) -> bool:
    if role is Role.ADMIN:
        return True
    return is_assignee(caller_id, assignments)


def visible_assignments(
    caller_id: Optional[str], role: Role, assignments: Sequence[TaskAssignment]
) -> List[TaskAssignment]:
    if role is Role.ADMIN:
        return list(assignments)
    return [assignment for assignment in assignments if assignment.assignee_id == caller_id]


def filter_by_room(tasks: Iterable[T], room_id: Optional[str]) -> List[T]:
    """Room scoping applied after role filtering; ``None`` keeps every task."""
    if room_id is None:
        return list(tasks)
    return [task for task in tasks if task.room_id == room_id]


def can_create_task(role: Role) -> bool:
    return role is Role.ADMIN


def can_delete_task(role: Role) -> bool:
    return role is Role.ADMIN


def can_edit_task_details(role: Role) -> bool:
    return role is Role.ADMIN


def can_manage_assignees(role: Role) -> bool:
    return role is Role.ADMIN


def can_set_task_status(caller_id: Optional[str], role: Role, assignments: Iterable[TaskAssignment]) -> bool:
    if role is Role.ADMIN:
        return True
    return is_assignee(caller_id, assignments)


def can_set_assignment_status(caller_id: Optional[str], role: Role, assignee_id: str) -> bool:
    if role is Role.ADMIN:
        return True
    return bool(caller_id) and caller_id == assignee_id


def ensure_can_create_task(role: Role) -> None:
    if not can_create_task(role):
        raise Forbidden("Only organization admins can create tasks")


def ensure_can_delete_task(role: Role) -> None:
    if not can_delete_task(role):
        raise Forbidden("Only organization admins can delete tasks")


def ensure_can_manage_assignees(role: Role) -> None:
    if not can_manage_assignees(role):
        raise Forbidden("Only organization admins can change task assignees")


def ensure_can_update_task(
    caller_id: Optional[str],
    role: Role,
    task: Task,
    assignments: Iterable[TaskAssignment],
    fields: Iterable[str],
) -> None:
    fields = set(fields)
    if fields & DETAIL_FIELDS and not can_edit_task_details(role):
        raise Forbidden("Only organization admins can edit task details")
    if "status" in fields and not can_set_task_status(caller_id, role, assignments):
        raise Forbidden(f"You are not allowed to change the status of task {task.id}")


def ensure_can_set_assignment_status(caller_id: Optional[str], role: Role, assignee_id: str) -> None:
    if not can_set_assignment_status(caller_id, role, assignee_id):
        raise Forbidden("You can only update your own assignment")
