"""FastAPI dependencies shared by the routers."""
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from orgtasks.database import get_db
from orgtasks.identity import DatabaseIdentityProvider
from orgtasks.services.notifications import NotificationPoller
from orgtasks.services.task_engine import TaskEngine
from orgtasks.store import RecordStore


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Caller identity as forwarded by the authenticating proxy; ``None`` when absent."""
    if x_user_id is None:
        return None
    return x_user_id.strip() or None


def get_task_engine(db: Session = Depends(get_db)) -> TaskEngine:
    return TaskEngine(RecordStore(db), DatabaseIdentityProvider(db))


def get_notification_poller(request: Request) -> NotificationPoller:
    return request.app.state.notification_poller
