"""
Record store adapter for the task lifecycle engine.

A plain CRUD layer over the SQLAlchemy session: insert, update-by-id,
delete-by-id, and reads filtered by equality and ordered by a single column.
It knows nothing about statuses or roles and has no cascade behaviour; the
engine issues dependent deletes itself.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from orgtasks.exceptions import ConflictError, NotFound
from orgtasks.models import Task, TaskAssignment, TaskComment

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", Task, TaskAssignment, TaskComment)

RECORD_KINDS = (Task, TaskAssignment, TaskComment)

_KIND_LABELS = {
    Task: "Task",
    TaskAssignment: "Assignment",
    TaskComment: "Comment",
}


def _require_kind(kind: Type[Any]) -> None:
    if kind not in RECORD_KINDS:
        raise TypeError(f"Unsupported record kind: {kind!r}")


def _column(kind: Type[Any], name: str):
    if name not in kind.__table__.c:
        raise ValueError(f"{kind.__name__} has no column '{name}'")
    return getattr(kind, name)


class RecordStore:
    """CRUD access to tasks, assignments and comments through one session."""

    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self) -> Iterator["RecordStore"]:
        """Commit everything written inside the block, or roll all of it back."""
        try:
            yield self
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _flush(self, kind: Type[Any]) -> None:
        label = _KIND_LABELS[kind]
        try:
            self.db.flush()
        except IntegrityError as exc:
            logger.warning("Integrity error while writing %s: %s", label, exc.orig)
            raise ConflictError(f"{label} conflicts with an existing record") from exc
        except StaleDataError as exc:
            logger.info("Stale %s version detected: %s", label, exc)
            raise ConflictError(f"{label} was modified concurrently") from exc

    def insert(self, kind: Type[RecordT], values: Dict[str, Any]) -> RecordT:
        _require_kind(kind)
        record = kind(**values)
        self.db.add(record)
        self._flush(kind)
        return record

    def get(self, kind: Type[RecordT], record_id: int) -> Optional[RecordT]:
        _require_kind(kind)
        return self.db.query(kind).filter(kind.id == record_id).first()

    def get_or_404(self, kind: Type[RecordT], record_id: int) -> RecordT:
        record = self.get(kind, record_id)
        if record is None:
            raise NotFound(f"{_KIND_LABELS[kind]} not found")
        return record

    def update(self, kind: Type[RecordT], record_id: int, patch: Dict[str, Any]) -> RecordT:
        record = self.get_or_404(kind, record_id)
        for field, value in patch.items():
            _column(kind, field)
            setattr(record, field, value)
            # Written even when equal, so a versioned row always gets its version bumped.
            flag_modified(record, field)
        self._flush(kind)
        return record

    def delete(self, kind: Type[RecordT], record_id: int) -> None:
        record = self.get_or_404(kind, record_id)
        self.db.delete(record)
        self._flush(kind)

    def query(
        self,
        kind: Type[RecordT],
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[RecordT]:
        _require_kind(kind)
        query = self.db.query(kind)
        for field, value in (filters or {}).items():
            query = query.filter(_column(kind, field) == value)

        if order_by is not None:
            column = _column(kind, order_by)
            if descending:
                query = query.order_by(column.desc(), kind.id.desc())
            else:
                query = query.order_by(column.asc(), kind.id.asc())
        return query.all()
