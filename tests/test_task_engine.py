import gc
import logging
from itertools import permutations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

import orgtasks.models as models
from orgtasks.config import Settings
from orgtasks.database import Base
from orgtasks.exceptions import ConflictError, Forbidden, NotFound, Unauthenticated, ValidationError
from orgtasks.identity import DatabaseIdentityProvider, Role
from orgtasks.models import AssignmentStatus, TaskPriority, TaskStatus
from orgtasks.schemas import TaskCreate, TaskUpdate
from orgtasks.services.task_engine import (
    TaskEngine,
    TaskLocks,
    auto_start_status,
    derive_task_status,
)
from orgtasks.store import RecordStore

ORG = "org_acme"
OTHER_ORG = "org_globex"


def _create_task(
    engine: TaskEngine,
    title: str = "Ship release",
    assignees=("alice", "bob"),
    organization_id: str = ORG,
    room_id=None,
    caller: str = "admin",
    **extra,
) -> models.Task:
    task_in = TaskCreate(
        organization_id=organization_id,
        room_id=room_id,
        title=title,
        assignee_ids=list(assignees),
        **extra,
    )
    return engine.create_task(caller, task_in)


def _assignment(session: Session, task_id: int, assignee_id: str) -> models.TaskAssignment:
    return (
        session.query(models.TaskAssignment)
        .filter(models.TaskAssignment.task_id == task_id, models.TaskAssignment.assignee_id == assignee_id)
        .one()
    )


def test_ship_release_completes_when_every_assignee_completes(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine, priority=TaskPriority.URGENT)
    assert task.status == TaskStatus.PENDING
    assert task.priority == TaskPriority.URGENT
    assert task.created_by == "admin"

    assignments = db_session.query(models.TaskAssignment).filter_by(task_id=task.id).all()
    assert sorted(a.assignee_id for a in assignments) == ["alice", "bob"]
    assert all(a.status == AssignmentStatus.PENDING for a in assignments)
    assert all(a.assigned_by == "admin" for a in assignments)

    task_engine.update_assignment_status("alice", task.id, "alice", "completed")
    assert task_engine.get_task("admin", task.id).status == TaskStatus.PENDING

    task_engine.update_assignment_status("bob", task.id, "bob", AssignmentStatus.COMPLETED)
    assert task_engine.get_task("admin", task.id).status == TaskStatus.COMPLETED


@pytest.mark.parametrize("order", list(permutations(["alice", "bob", "carol"])))
def test_completion_does_not_depend_on_order(task_engine: TaskEngine, order):
    task = _create_task(task_engine, assignees=("alice", "bob", "carol"))

    for assignee_id in order[:-1]:
        task_engine.update_assignment_status("admin", task.id, assignee_id, "completed")
        assert task_engine.get_task("admin", task.id).status == TaskStatus.PENDING

    task_engine.update_assignment_status("admin", task.id, order[-1], "completed")
    assert task_engine.get_task("admin", task.id).status == TaskStatus.COMPLETED


def test_completed_task_is_not_reopened(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine)
    task_engine.update_assignment_status("alice", task.id, "alice", "completed")
    task_engine.update_assignment_status("bob", task.id, "bob", "completed")
    assert _assignment(db_session, task.id, "alice").completed_at is not None

    task_engine.update_assignment_status("alice", task.id, "alice", "in_progress")

    alice = _assignment(db_session, task.id, "alice")
    assert alice.status == AssignmentStatus.IN_PROGRESS
    assert alice.completed_at is None
    assert task_engine.get_task("admin", task.id).status == TaskStatus.COMPLETED


def test_duplicate_and_blank_assignees_are_collapsed(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine, assignees=("alice", "alice", " bob ", ""))

    assignments = db_session.query(models.TaskAssignment).filter_by(task_id=task.id).all()
    assert sorted(a.assignee_id for a in assignments) == ["alice", "bob"]


def test_create_task_validates_caller_role_and_input(task_engine: TaskEngine, db_session: Session):
    with pytest.raises(Unauthenticated):
        _create_task(task_engine, caller=None)
    with pytest.raises(Forbidden):
        _create_task(task_engine, caller="alice")
    with pytest.raises(Forbidden):
        _create_task(task_engine, caller="mallory")
    with pytest.raises(ValidationError) as exc:
        _create_task(task_engine, title="   ")
    assert exc.value.detail == "Task title cannot be empty"
    with pytest.raises(ValidationError):
        _create_task(task_engine, assignees=())

    assert db_session.query(models.Task).count() == 0


def test_create_task_is_atomic(task_engine: TaskEngine, db_session: Session, monkeypatch):
    original_insert = task_engine.store.insert

    def failing_insert(kind, values):
        if kind is models.TaskAssignment and values["assignee_id"] == "bob":
            raise ConflictError("Assignment conflicts with an existing record")
        return original_insert(kind, values)

    monkeypatch.setattr(task_engine.store, "insert", failing_insert)

    with pytest.raises(ConflictError):
        _create_task(task_engine)

    assert db_session.query(models.Task).count() == 0
    assert db_session.query(models.TaskAssignment).count() == 0


def test_title_is_trimmed_on_create_and_update(task_engine: TaskEngine):
    task = _create_task(task_engine, title="  Ship release  ")
    assert task.title == "Ship release"

    updated = task_engine.update_task("admin", task.id, TaskUpdate(title="  Ship 2.0 "))
    assert updated.title == "Ship 2.0"

    with pytest.raises(ValidationError):
        task_engine.update_task("admin", task.id, TaskUpdate(title=" "))
    with pytest.raises(ValidationError):
        task_engine.update_task("admin", task.id, TaskUpdate(priority=None))


def test_members_cannot_edit_task_details(task_engine: TaskEngine):
    task = _create_task(task_engine)

    with pytest.raises(Forbidden):
        task_engine.update_task("alice", task.id, TaskUpdate(priority=TaskPriority.LOW))
    with pytest.raises(Forbidden):
        task_engine.update_task("bob", task.id, TaskUpdate(title="Mine now"))

    assert task_engine.get_task("admin", task.id).priority == TaskPriority.MEDIUM


def test_assignee_may_set_task_status_but_others_may_not(task_engine: TaskEngine):
    task = _create_task(task_engine)

    updated = task_engine.update_task("alice", task.id, TaskUpdate(status=TaskStatus.IN_PROGRESS))
    assert updated.status == TaskStatus.IN_PROGRESS

    with pytest.raises(NotFound):
        task_engine.update_task("carol", task.id, TaskUpdate(status=TaskStatus.CANCELLED))
    assert task_engine.get_task("admin", task.id).status == TaskStatus.IN_PROGRESS


@pytest.mark.parametrize("caller", ["carol", "mallory"])
def test_hidden_task_is_not_found_for_updates_and_comments(task_engine: TaskEngine, db_session: Session, caller):
    task = _create_task(task_engine, title="Secret")

    with pytest.raises(NotFound):
        task_engine.update_task(caller, task.id, TaskUpdate())
    with pytest.raises(NotFound):
        task_engine.update_task(caller, task.id, TaskUpdate(title="Leaked"))
    with pytest.raises(NotFound):
        task_engine.add_comment(caller, task.id, "hi from outside")

    assert db_session.query(models.TaskComment).count() == 0
    assert task_engine.get_task("admin", task.id).title == "Secret"


def test_empty_patch_returns_task_for_visible_callers(task_engine: TaskEngine):
    task = _create_task(task_engine, title="Visible")

    assert task_engine.update_task("alice", task.id, TaskUpdate()).title == "Visible"
    assert task_engine.update_task("admin", task.id, TaskUpdate()).title == "Visible"


def test_cancelling_a_task_leaves_assignments_untouched(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine)
    task_engine.update_assignment_status("alice", task.id, "alice", "in_progress")

    task_engine.update_task("admin", task.id, TaskUpdate(status=TaskStatus.CANCELLED))

    assert task_engine.get_task("admin", task.id).status == TaskStatus.CANCELLED
    assert _assignment(db_session, task.id, "alice").status == AssignmentStatus.IN_PROGRESS
    assert _assignment(db_session, task.id, "bob").status == AssignmentStatus.PENDING


def test_completion_rule_applies_to_cancelled_tasks(task_engine: TaskEngine):
    task = _create_task(task_engine)
    task_engine.update_task("admin", task.id, TaskUpdate(status=TaskStatus.CANCELLED))

    task_engine.update_assignment_status("admin", task.id, "alice", "completed")
    assert task_engine.get_task("admin", task.id).status == TaskStatus.CANCELLED

    task_engine.update_assignment_status("admin", task.id, "bob", "completed")
    assert task_engine.get_task("admin", task.id).status == TaskStatus.COMPLETED


def test_delete_task_removes_assignments_and_comments(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine)
    task_id = task.id
    for text in ("first", "second", "third"):
        task_engine.add_comment("alice", task_id, text)

    with pytest.raises(Forbidden):
        task_engine.delete_task("alice", task_id)

    task_engine.delete_task("admin", task_id)

    assert db_session.query(models.Task).count() == 0
    assert db_session.query(models.TaskAssignment).count() == 0
    assert db_session.query(models.TaskComment).count() == 0
    with pytest.raises(NotFound):
        task_engine.get_task("admin", task_id)
    with pytest.raises(NotFound):
        task_engine.delete_task("admin", task_id)


def test_assignment_status_rules(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine)

    with pytest.raises(Forbidden):
        task_engine.update_assignment_status("alice", task.id, "bob", "completed")
    with pytest.raises(ValidationError):
        task_engine.update_assignment_status("alice", task.id, "alice", "done")
    with pytest.raises(NotFound):
        task_engine.update_assignment_status("admin", task.id, "carol", "completed")
    with pytest.raises(NotFound):
        task_engine.update_assignment_status("admin", 999, "alice", "completed")
    with pytest.raises(Unauthenticated):
        task_engine.update_assignment_status(None, task.id, "alice", "completed")

    assignment = task_engine.update_assignment_status("admin", task.id, "bob", "completed")
    assert assignment.status == AssignmentStatus.COMPLETED
    assert assignment.completed_at is not None
    assert _assignment(db_session, task.id, "alice").status == AssignmentStatus.PENDING


def test_auto_start_is_off_by_default(task_engine: TaskEngine):
    task = _create_task(task_engine)

    task_engine.update_assignment_status("alice", task.id, "alice", "in_progress")

    assert task_engine.get_task("admin", task.id).status == TaskStatus.PENDING


def test_auto_start_moves_pending_task_to_in_progress(db_session: Session, members, clock):
    engine = TaskEngine(
        RecordStore(db_session),
        DatabaseIdentityProvider(db_session),
        settings=Settings(AUTO_START_TASK_ON_PROGRESS=True),
        clock=clock,
        locks=TaskLocks(),
    )
    started = _create_task(engine, title="Started")
    cancelled = _create_task(engine, title="Cancelled")
    engine.update_task("admin", cancelled.id, TaskUpdate(status=TaskStatus.CANCELLED))

    engine.update_assignment_status("alice", started.id, "alice", "in_progress")
    engine.update_assignment_status("alice", cancelled.id, "alice", "in_progress")

    assert engine.get_task("admin", started.id).status == TaskStatus.IN_PROGRESS
    assert engine.get_task("admin", cancelled.id).status == TaskStatus.CANCELLED


def test_assign_task_to_users_skips_existing_assignees(task_engine: TaskEngine, db_session: Session):
    task = _create_task(task_engine, assignees=("alice",))

    created = task_engine.assign_task_to_users("admin", task.id, ["alice", "carol", "carol"])
    assert [a.assignee_id for a in created] == ["carol"]
    assert task_engine.assign_task_to_users("admin", task.id, ["alice"]) == []

    with pytest.raises(Forbidden):
        task_engine.assign_task_to_users("alice", task.id, ["bob"])
    with pytest.raises(ValidationError):
        task_engine.assign_task_to_users("admin", task.id, [" "])

    assert db_session.query(models.TaskAssignment).filter_by(task_id=task.id).count() == 2


def test_new_assignee_does_not_reopen_completed_task(task_engine: TaskEngine):
    task = _create_task(task_engine, assignees=("alice",))
    task_engine.update_assignment_status("alice", task.id, "alice", "completed")
    assert task_engine.get_task("admin", task.id).status == TaskStatus.COMPLETED

    task_engine.assign_task_to_users("admin", task.id, ["bob"])

    assert task_engine.get_task("admin", task.id).status == TaskStatus.COMPLETED


def test_removing_last_open_assignee_completes_task(task_engine: TaskEngine):
    task = _create_task(task_engine)
    task_engine.update_assignment_status("alice", task.id, "alice", "completed")

    with pytest.raises(Forbidden):
        task_engine.remove_task_assignment("alice", task.id, "bob")
    with pytest.raises(NotFound):
        task_engine.remove_task_assignment("admin", task.id, "carol")

    task_engine.remove_task_assignment("admin", task.id, "bob")

    detail = task_engine.get_task("admin", task.id)
    assert detail.status == TaskStatus.COMPLETED
    assert [a.assignee_id for a in detail.assignments] == ["alice"]


def test_assignment_update_retries_version_conflicts(task_engine: TaskEngine, db_session: Session, monkeypatch):
    task_id = _create_task(task_engine).id
    original_update = task_engine.store.update
    calls = {"task_writes": 0}

    def flaky_update(kind, record_id, patch):
        if kind is models.Task:
            calls["task_writes"] += 1
            if calls["task_writes"] == 1:
                raise ConflictError("Task was modified concurrently")
        return original_update(kind, record_id, patch)

    monkeypatch.setattr(task_engine.store, "update", flaky_update)

    task_engine.update_assignment_status("alice", task_id, "alice", "completed")

    assert calls["task_writes"] == 2
    assert _assignment(db_session, task_id, "alice").status == AssignmentStatus.COMPLETED


def test_assignment_update_gives_up_after_retry_budget(task_engine: TaskEngine, db_session: Session, monkeypatch):
    task_id = _create_task(task_engine).id
    original_update = task_engine.store.update
    calls = {"task_writes": 0}

    def conflicting_update(kind, record_id, patch):
        if kind is models.Task:
            calls["task_writes"] += 1
            raise ConflictError("Task was modified concurrently")
        return original_update(kind, record_id, patch)

    monkeypatch.setattr(task_engine.store, "update", conflicting_update)

    with pytest.raises(ConflictError):
        task_engine.update_assignment_status("alice", task_id, "alice", "completed")

    assert calls["task_writes"] == task_engine.settings.AGGREGATE_RETRY_ATTEMPTS
    assert _assignment(db_session, task_id, "alice").status == AssignmentStatus.PENDING


def test_comments_are_trimmed_and_listed_oldest_first(task_engine: TaskEngine):
    task = _create_task(task_engine)

    with pytest.raises(ValidationError):
        task_engine.add_comment("alice", task.id, "   ")
    with pytest.raises(Unauthenticated):
        task_engine.add_comment(None, task.id, "hello")
    with pytest.raises(NotFound):
        task_engine.add_comment("alice", 999, "hello")

    task_engine.add_comment("alice", task.id, "  on it  ")
    task_engine.add_comment("admin", task.id, "thanks")

    comments = task_engine.list_comments("bob", task.id)
    assert [(c.author_id, c.content) for c in comments] == [("alice", "on it"), ("admin", "thanks")]

    with pytest.raises(NotFound):
        task_engine.list_comments("carol", task.id)


def test_admin_sees_every_task_of_the_organization_newest_first(task_engine: TaskEngine):
    first = _create_task(task_engine, title="First", room_id="room-a")
    second = _create_task(task_engine, title="Second", assignees=("carol",), room_id="room-b")
    _create_task(task_engine, title="Elsewhere", organization_id=OTHER_ORG)

    tasks = task_engine.list_tasks("admin", ORG)

    assert [t.id for t in tasks] == [second.id, first.id]
    assert [a.assignee_id for a in tasks[1].assignments] == ["alice", "bob"]


def test_member_sees_only_assigned_tasks_and_own_assignment(task_engine: TaskEngine):
    mine = _create_task(task_engine, title="Mine", room_id="room-a")
    _create_task(task_engine, title="Not mine", assignees=("carol",), room_id="room-a")
    task_engine.add_comment("bob", mine.id, "bob was here")

    tasks = task_engine.list_tasks("alice", ORG)

    assert [t.title for t in tasks] == ["Mine"]
    assert [a.assignee_id for a in tasks[0].assignments] == ["alice"]
    assert [c.content for c in tasks[0].comments] == ["bob was here"]

    detail = task_engine.get_task("alice", mine.id)
    assert [a.assignee_id for a in detail.assignments] == ["alice"]
    with pytest.raises(NotFound):
        task_engine.get_task("carol", mine.id)


def test_room_filter_applies_after_role_filter(task_engine: TaskEngine):
    _create_task(task_engine, title="Room A", room_id="room-a")
    _create_task(task_engine, title="Room B", room_id="room-b")
    _create_task(task_engine, title="Carol in A", assignees=("carol",), room_id="room-a")

    admin_view = task_engine.list_tasks_for_caller(ORG, "admin", "org:admin", room_id="room-a")
    assert [t.title for t in admin_view] == ["Carol in A", "Room A"]

    member_view = task_engine.list_tasks_for_caller(ORG, "alice", Role.MEMBER, room_id="room-a")
    assert [t.title for t in member_view] == ["Room A"]

    assert task_engine.list_tasks_for_caller(ORG, "alice", "member", room_id="room-c") == []
    assert task_engine.list_tasks_for_caller(ORG, None, "member") == []

    with pytest.raises(Unauthenticated):
        task_engine.list_tasks(None, ORG)


def test_compute_stats_counts_stored_statuses(task_engine: TaskEngine):
    _create_task(task_engine, title="Open")
    done = _create_task(task_engine, title="Done", assignees=("alice",))
    dropped = _create_task(task_engine, title="Dropped")
    started = _create_task(task_engine, title="Started")
    _create_task(task_engine, title="Elsewhere", organization_id=OTHER_ORG)

    task_engine.update_assignment_status("alice", done.id, "alice", "completed")
    task_engine.update_task("admin", dropped.id, TaskUpdate(status=TaskStatus.CANCELLED))
    task_engine.update_task("admin", started.id, TaskUpdate(status=TaskStatus.IN_PROGRESS))

    stats = task_engine.compute_stats(ORG)

    assert stats.total == 4
    assert stats.pending == 1
    assert stats.in_progress == 1
    assert stats.completed == 1
    assert task_engine.compute_stats("org_empty").total == 0


def test_assignable_members_excludes_admins(task_engine: TaskEngine):
    members = task_engine.assignable_members(ORG)
    assert [m.user_id for m in members] == ["alice", "bob", "carol"]
    assert all(m.role is Role.MEMBER for m in members)

    present = task_engine.assignable_members(ORG, present_ids=["bob", "admin", "zed", "bob"])
    assert [(m.user_id, m.display_name) for m in present] == [("bob", "Bob"), ("zed", None)]

    assert task_engine.assignable_members(OTHER_ORG) == []


def test_derive_task_status_requires_all_assignments_completed():
    completed = AssignmentStatus.COMPLETED
    assert derive_task_status(TaskStatus.PENDING, []) == TaskStatus.PENDING
    assert derive_task_status(TaskStatus.IN_PROGRESS, [completed, AssignmentStatus.PENDING]) == TaskStatus.IN_PROGRESS
    assert derive_task_status(TaskStatus.PENDING, [completed, completed]) == TaskStatus.COMPLETED
    assert derive_task_status(TaskStatus.COMPLETED, [AssignmentStatus.IN_PROGRESS]) == TaskStatus.COMPLETED


def test_auto_start_status_only_starts_pending_tasks():
    in_progress = AssignmentStatus.IN_PROGRESS
    assert auto_start_status(TaskStatus.PENDING, in_progress) == TaskStatus.IN_PROGRESS
    assert auto_start_status(TaskStatus.PENDING, AssignmentStatus.COMPLETED) == TaskStatus.PENDING
    assert auto_start_status(TaskStatus.CANCELLED, in_progress) == TaskStatus.CANCELLED
    assert auto_start_status(TaskStatus.COMPLETED, in_progress) == TaskStatus.COMPLETED


def test_stale_task_version_from_another_session_is_retried(tmp_path, clock, caplog):
    file_engine = create_engine(f"sqlite:///{tmp_path / 'orgtasks.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=file_engine)
    SessionFactory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)

    seed = SessionFactory()
    seed.add_all([
        models.OrganizationMember(organization_id=ORG, user_id="admin", role="org:admin"),
        models.OrganizationMember(organization_id=ORG, user_id="alice", role="org:member"),
        models.OrganizationMember(organization_id=ORG, user_id="bob", role="org:member"),
    ])
    seed.commit()
    seed.close()

    session_a, session_b = SessionFactory(), SessionFactory()
    try:
        engine_a = TaskEngine(RecordStore(session_a), DatabaseIdentityProvider(session_a), clock=clock, locks=TaskLocks())
        engine_b = TaskEngine(RecordStore(session_b), DatabaseIdentityProvider(session_b), clock=clock, locks=TaskLocks())
        task_id = _create_task(engine_a).id

        stale = engine_b.store.get(models.Task, task_id)
        assert stale.version == 1

        engine_a.update_assignment_status("alice", task_id, "alice", "completed")

        with caplog.at_level(logging.INFO, logger="orgtasks"):
            engine_b.update_assignment_status("bob", task_id, "bob", "completed")

        assert "Stale Task version detected" in caplog.text
        assert "Conflict on task" in caplog.text

        session_a.expire_all()
        task = session_a.get(models.Task, task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.version == 3
    finally:
        session_a.close()
        session_b.close()
        file_engine.dispose()


def test_task_locks_are_dropped_once_unused(task_engine: TaskEngine):
    locks = TaskLocks()
    lock = locks.for_task(1)
    assert locks.for_task(1) is lock
    assert len(locks) == 1

    del lock
    gc.collect()
    assert len(locks) == 0

    task = _create_task(task_engine)
    task_engine.update_assignment_status("alice", task.id, "alice", "completed")
    gc.collect()
    assert len(task_engine.locks) == 0


def test_ensure_member_requires_roster_entry(task_engine: TaskEngine):
    assert task_engine.ensure_member("admin", ORG) is Role.ADMIN
    assert task_engine.ensure_member("carol", ORG) is Role.MEMBER

    with pytest.raises(Forbidden):
        task_engine.ensure_member("mallory", ORG)
    with pytest.raises(Forbidden):
        task_engine.ensure_member("alice", OTHER_ORG)
    with pytest.raises(Unauthenticated):
        task_engine.ensure_member(None, ORG)
