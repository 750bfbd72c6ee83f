"""
Task lifecycle engine - business logic for tasks and their assignments.
This layer contains no HTTP framework dependencies.

A task's status is a stored field. It is written directly by callers with
the right to do so, and re-derived by ``derive_task_status`` after every
assignment mutation: once every assignment is completed the task becomes
completed. Nothing else happens automatically (no auto-reopen, and
auto-start only when enabled in settings).
"""
import enum
import logging
import threading
import weakref
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Type, TypeVar, Union

from orgtasks.config import Settings, settings as app_settings
from orgtasks.exceptions import ConflictError, Forbidden, NotFound, Unauthenticated, ValidationError
from orgtasks.identity import IdentityProvider, MemberInfo, Role, parse_role
from orgtasks.models import AssignmentStatus, Task, TaskAssignment, TaskComment, TaskStatus
from orgtasks.schemas import (
    TaskAssignmentResponse,
    TaskCommentResponse,
    TaskCreate,
    TaskDetailResponse,
    TaskResponse,
    TaskStatsResponse,
    TaskUpdate,
)
from orgtasks.services import policy
from orgtasks.store import RecordStore
from orgtasks.utils.clock import utcnow

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=enum.Enum)
R = TypeVar("R")

# Task fields that may not be cleared through an update
_NON_NULLABLE_FIELDS = ("title", "status", "priority")


class TaskLocks:
    """Process-wide registry of one mutex per task id.

    Entries are weak: a lock lives only while some caller holds it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def for_task(self, task_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[task_id] = lock
            return lock

    def discard(self, task_id: int) -> None:
        with self._guard:
            self._locks.pop(task_id, None)


task_locks = TaskLocks()


def derive_task_status(current: TaskStatus, assignment_statuses: Sequence[AssignmentStatus]) -> TaskStatus:
    """Completion roll-up: at least one assignment and all of them completed."""
    if assignment_statuses and all(status == AssignmentStatus.COMPLETED for status in assignment_statuses):
        return TaskStatus.COMPLETED
    return current


def auto_start_status(current: TaskStatus, assignment_status: AssignmentStatus) -> TaskStatus:
    """First assignment moving to in_progress starts a pending task."""
    if assignment_status == AssignmentStatus.IN_PROGRESS and current == TaskStatus.PENDING:
        return TaskStatus.IN_PROGRESS
    return current


def _coerce(enum_cls: Type[E], value: Union[E, str], label: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {label} '{value}'") from None


def _unique_ids(identities: Iterable[Optional[str]]) -> List[str]:
    seen = set()
    unique: List[str] = []
    for identity in identities:
        identity = (identity or "").strip()
        if identity and identity not in seen:
            seen.add(identity)
            unique.append(identity)
    return unique


class TaskEngine:
    """Creates tasks, mutates assignments and computes role-filtered views."""

    def __init__(
        self,
        store: RecordStore,
        identity: IdentityProvider,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[TaskLocks] = None,
    ):
        self.store = store
        self.identity = identity
        self.settings = settings or app_settings
        self.clock = clock
        self.locks = locks or task_locks

    # ---- helpers ----

    @staticmethod
    def _require_caller(caller: Optional[str]) -> str:
        caller = (caller or "").strip()
        if not caller:
            raise Unauthenticated()
        return caller

    def _role(self, organization_id: str, caller: Optional[str]) -> Role:
        return self.identity.role_of(organization_id, caller)

    def _load_task(self, task_id: int) -> Task:
        return self.store.get_or_404(Task, task_id)

    def _assignments(self, task_id: int) -> List[TaskAssignment]:
        return self.store.query(TaskAssignment, {"task_id": task_id}, order_by="created_at")

    def _comments(self, task_id: int) -> List[TaskComment]:
        return self.store.query(TaskComment, {"task_id": task_id}, order_by="created_at")

    def _find_assignment(self, task_id: int, assignee_id: str) -> TaskAssignment:
        matches = self.store.query(TaskAssignment, {"task_id": task_id, "assignee_id": assignee_id})
        if not matches:
            raise NotFound(f"No assignment for '{assignee_id}' on task {task_id}")
        return matches[0]

    def _detail(
        self,
        task: Task,
        assignments: Sequence[TaskAssignment],
        comments: Sequence[TaskComment],
    ) -> TaskDetailResponse:
        return TaskDetailResponse(
            **TaskResponse.model_validate(task).model_dump(),
            assignments=[TaskAssignmentResponse.model_validate(a) for a in assignments],
            comments=[TaskCommentResponse.model_validate(c) for c in comments],
        )

    def _recompute_task_status(
        self,
        task: Task,
        now: datetime,
        assignment_status: Optional[AssignmentStatus] = None,
    ) -> Task:
        current = task.status
        new_status = current
        if assignment_status is not None and self.settings.AUTO_START_TASK_ON_PROGRESS:
            new_status = auto_start_status(new_status, assignment_status)

        statuses = [assignment.status for assignment in self._assignments(task.id)]
        new_status = derive_task_status(new_status, statuses)

        if new_status != current:
            logger.info("Task %s status %s -> %s", task.id, current.value, new_status.value)

        # Always written (the store flags patched columns), so every recompute bumps the version.
        return self.store.update(Task, task.id, {"status": new_status, "updated_at": now})

    def _with_task_retry(self, task_id: int, operation: Callable[[], R]) -> R:
        """Run ``operation`` in one transaction under the task's lock, retrying version conflicts."""
        attempts = self.settings.AGGREGATE_RETRY_ATTEMPTS
        with self.locks.for_task(task_id):
            for attempt in range(1, attempts + 1):
                try:
                    with self.store.transaction():
                        return operation()
                except ConflictError:
                    if attempt >= attempts:
                        logger.warning("Giving up on task %s after %s conflicting attempts", task_id, attempt)
                        raise
                    logger.info("Conflict on task %s (attempt %s/%s); retrying", task_id, attempt, attempts)
        raise ConflictError(f"Task {task_id} could not be updated")

    # ---- mutations ----

    def create_task(self, caller: Optional[str], data: TaskCreate) -> Task:
        """
        Create a pending task with one pending assignment per unique assignee.

        The task and its assignments are written in a single transaction.
        """
        caller = self._require_caller(caller)
        policy.ensure_can_create_task(self._role(data.organization_id, caller))

        title = (data.title or "").strip()
        if not title:
            raise ValidationError("Task title cannot be empty")

        assignee_ids = _unique_ids(data.assignee_ids)
        if not assignee_ids:
            raise ValidationError("A task needs at least one assignee")

        now = self.clock()

        with self.store.transaction():
            task = self.store.insert(Task, {
                "organization_id": data.organization_id,
                "room_id": data.room_id,
                "title": title,
                "description": data.description,
                "status": TaskStatus.PENDING,
                "priority": data.priority,
                "due_date": data.due_date,
                "created_by": caller,
                "created_at": now,
                "updated_at": now,
            })
            for assignee_id in assignee_ids:
                self.store.insert(TaskAssignment, {
                    "task_id": task.id,
                    "assignee_id": assignee_id,
                    "assigned_by": caller,
                    "status": AssignmentStatus.PENDING,
                    "created_at": now,
                })

        logger.info(
            "Task %s created in org=%s by %s with %s assignee(s)",
            task.id, data.organization_id, caller, len(assignee_ids),
        )
        return task

    def update_task(self, caller: Optional[str], task_id: int, patch: TaskUpdate) -> Task:
        """Apply the fields explicitly set in ``patch``."""
        caller = self._require_caller(caller)
        changes = patch.model_dump(exclude_unset=True)

        with self.locks.for_task(task_id), self.store.transaction():
            task, role, assignments = self._visible_task(caller, task_id)
            policy.ensure_can_update_task(caller, role, task, assignments, changes.keys())

            for field in _NON_NULLABLE_FIELDS:
                if field in changes and changes[field] is None:
                    raise ValidationError(f"Task {field} cannot be empty")
            if "title" in changes:
                changes["title"] = changes["title"].strip()
                if not changes["title"]:
                    raise ValidationError("Task title cannot be empty")

            if not changes:
                return task

            changes["updated_at"] = self.clock()
            task = self.store.update(Task, task_id, changes)

        logger.info("Task %s updated by %s: %s", task_id, caller, sorted(changes))
        return task

    def delete_task(self, caller: Optional[str], task_id: int) -> None:
        """Delete a task together with its comments and assignments."""
        caller = self._require_caller(caller)

        with self.locks.for_task(task_id), self.store.transaction():
            task = self._load_task(task_id)
            policy.ensure_can_delete_task(self._role(task.organization_id, caller))

            comments = self._comments(task_id)
            assignments = self._assignments(task_id)
            for comment in comments:
                self.store.delete(TaskComment, comment.id)
            for assignment in assignments:
                self.store.delete(TaskAssignment, assignment.id)
            self.store.delete(Task, task_id)

        self.locks.discard(task_id)
        logger.info(
            "Task %s deleted by %s (%s assignment(s), %s comment(s))",
            task_id, caller, len(assignments), len(comments),
        )

    def update_assignment_status(
        self,
        caller: Optional[str],
        task_id: int,
        assignee_id: str,
        status: Union[AssignmentStatus, str],
    ) -> TaskAssignment:
        """Set one assignment's status, then re-derive the task's status."""
        caller = self._require_caller(caller)
        status = _coerce(AssignmentStatus, status, "assignment status")

        def apply() -> TaskAssignment:
            task = self._load_task(task_id)
            role = self._role(task.organization_id, caller)
            policy.ensure_can_set_assignment_status(caller, role, assignee_id)

            assignment = self._find_assignment(task_id, assignee_id)
            now = self.clock()
            assignment = self.store.update(TaskAssignment, assignment.id, {
                "status": status,
                "completed_at": now if status == AssignmentStatus.COMPLETED else None,
            })
            self._recompute_task_status(task, now, assignment_status=status)
            return assignment

        return self._with_task_retry(task_id, apply)

    def assign_task_to_users(
        self, caller: Optional[str], task_id: int, assignee_ids: Iterable[str]
    ) -> List[TaskAssignment]:
        """Add pending assignments for assignees not yet on the task."""
        caller = self._require_caller(caller)
        assignee_ids = _unique_ids(assignee_ids)
        if not assignee_ids:
            raise ValidationError("At least one assignee is required")

        def apply() -> List[TaskAssignment]:
            task = self._load_task(task_id)
            policy.ensure_can_manage_assignees(self._role(task.organization_id, caller))

            existing = {assignment.assignee_id for assignment in self._assignments(task_id)}
            now = self.clock()
            created = [
                self.store.insert(TaskAssignment, {
                    "task_id": task_id,
                    "assignee_id": assignee_id,
                    "assigned_by": caller,
                    "status": AssignmentStatus.PENDING,
                    "created_at": now,
                })
                for assignee_id in assignee_ids
                if assignee_id not in existing
            ]
            if created:
                self._recompute_task_status(task, now)
            return created

        created = self._with_task_retry(task_id, apply)
        logger.info("Task %s: %s assignee(s) added by %s", task_id, len(created), caller)
        return created

    def remove_task_assignment(self, caller: Optional[str], task_id: int, assignee_id: str) -> None:
        caller = self._require_caller(caller)

        def apply() -> None:
            task = self._load_task(task_id)
            policy.ensure_can_manage_assignees(self._role(task.organization_id, caller))

            assignment = self._find_assignment(task_id, assignee_id)
            self.store.delete(TaskAssignment, assignment.id)
            self._recompute_task_status(task, self.clock())

        self._with_task_retry(task_id, apply)
        logger.info("Task %s: assignee %s removed by %s", task_id, assignee_id, caller)

    def add_comment(self, caller: Optional[str], task_id: int, text: Optional[str]) -> TaskComment:
        caller = self._require_caller(caller)
        content = (text or "").strip()
        if not content:
            raise ValidationError("Comment content cannot be empty")

        with self.store.transaction():
            self._visible_task(caller, task_id)
            comment = self.store.insert(TaskComment, {
                "task_id": task_id,
                "author_id": caller,
                "content": content,
                "created_at": self.clock(),
            })
        return comment

    # ---- reads ----

    def list_tasks_for_caller(
        self,
        organization_id: str,
        caller_id: Optional[str],
        caller_role: Union[Role, str],
        room_id: Optional[str] = None,
    ) -> List[TaskDetailResponse]:
        """
        Tasks visible to the caller, newest first, each with its assignments
        and its comments (oldest first).

        Admins see every task of the organization with all assignments;
        members only see tasks they are assigned to, and only their own
        assignment on each. ``room_id`` narrows the role-filtered list.
        """
        role = caller_role if isinstance(caller_role, Role) else parse_role(caller_role)
        tasks = self.store.query(Task, {"organization_id": organization_id}, order_by="created_at", descending=True)

        if role is not Role.ADMIN:
            own_task_ids = set()
            if caller_id:
                own_task_ids = {
                    assignment.task_id
                    for assignment in self.store.query(TaskAssignment, {"assignee_id": caller_id})
                }
            tasks = [task for task in tasks if task.id in own_task_ids]

        tasks = policy.filter_by_room(tasks, room_id)

        return [
            self._detail(
                task,
                policy.visible_assignments(caller_id, role, self._assignments(task.id)),
                self._comments(task.id),
            )
            for task in tasks
        ]

    def list_tasks(
        self, caller: Optional[str], organization_id: str, room_id: Optional[str] = None
    ) -> List[TaskDetailResponse]:
        caller = self._require_caller(caller)
        role = self._role(organization_id, caller)
        return self.list_tasks_for_caller(organization_id, caller, role, room_id=room_id)

    def _visible_task(self, caller: str, task_id: int):
        task = self._load_task(task_id)
        role = self._role(task.organization_id, caller)
        assignments = self._assignments(task_id)
        if not policy.can_view_task(caller, role, assignments):
            raise NotFound("Task not found")
        return task, role, assignments

    def get_task(self, caller: Optional[str], task_id: int) -> TaskDetailResponse:
        caller = self._require_caller(caller)
        task, role, assignments = self._visible_task(caller, task_id)
        return self._detail(
            task,
            policy.visible_assignments(caller, role, assignments),
            self._comments(task_id),
        )

    def list_comments(self, caller: Optional[str], task_id: int) -> List[TaskComment]:
        caller = self._require_caller(caller)
        self._visible_task(caller, task_id)
        return self._comments(task_id)

    def ensure_member(self, caller: Optional[str], organization_id: str) -> Role:
        """Organization-wide reads are limited to people on the roster."""
        caller = self._require_caller(caller)
        for member in self.identity.members_of(organization_id):
            if member.user_id == caller:
                return member.role
        raise Forbidden("You are not a member of this organization")

    def compute_stats(self, organization_id: str) -> TaskStatsResponse:
        """Counts by stored task status (assignment statuses are not consulted)."""
        stats = TaskStatsResponse()
        for task in self.store.query(Task, {"organization_id": organization_id}):
            stats.total += 1
            if task.status == TaskStatus.PENDING:
                stats.pending += 1
            elif task.status == TaskStatus.IN_PROGRESS:
                stats.in_progress += 1
            elif task.status == TaskStatus.COMPLETED:
                stats.completed += 1
        return stats

    def assignable_members(
        self, organization_id: str, present_ids: Optional[Iterable[str]] = None
    ) -> List[MemberInfo]:
        """
        Members a task can be assigned to: everyone but admins. When
        ``present_ids`` is given, only those identities are offered; present
        identities without a membership row are offered as plain members.
        """
        members = self.identity.members_of(organization_id)
        if present_ids is None:
            return [member for member in members if member.role is not Role.ADMIN]

        by_id = {member.user_id: member for member in members}
        candidates: List[MemberInfo] = []
        for identity in _unique_ids(present_ids):
            member = by_id.get(identity)
            if member is None:
                candidates.append(MemberInfo(user_id=identity, display_name=None, role=Role.MEMBER))
            elif member.role is not Role.ADMIN:
                candidates.append(member)
        return candidates
