"""
New-task notifications.

A small polling loop per (user, room) subscription that:
- re-runs the caller's visible-task read path,
- reports tasks created after the subscription's watermark,
- moves the watermark forward on every successful tick.

The watermark lives in memory and starts at "now" on subscribe, so tasks
created before a (re)start are never reported. A failed read skips the tick
and keeps the watermark where it was. Subscriptions polled over HTTP (no
loop of their own) expire once nobody has polled them for the configured TTL.
"""
import asyncio
import inspect
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from orgtasks.config import Settings, settings as app_settings
from orgtasks.exceptions import NotFound
from orgtasks.identity import DatabaseIdentityProvider
from orgtasks.schemas import TaskDetailResponse
from orgtasks.services.task_engine import TaskEngine
from orgtasks.store import RecordStore
from orgtasks.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    id: str
    user_id: str
    organization_id: str
    room_id: Optional[str]
    last_checked: datetime
    last_activity: datetime


TaskSource = Callable[[Subscription], List[TaskDetailResponse]]
BatchHandler = Callable[[Subscription, List[TaskDetailResponse]], Any]


def select_new_tasks(
    tasks: List[TaskDetailResponse], last_checked: datetime, now: datetime
) -> List[TaskDetailResponse]:
    """Tasks created in the window (last_checked, now]."""
    return [task for task in tasks if last_checked < task.created_at <= now]


def engine_task_source(
    session_factory: Callable[[], Session], settings: Optional[Settings] = None
) -> TaskSource:
    """Read the subscriber's visible tasks through the engine, one session per tick."""

    def fetch(subscription: Subscription) -> List[TaskDetailResponse]:
        db = session_factory()
        try:
            engine = TaskEngine(RecordStore(db), DatabaseIdentityProvider(db), settings=settings)
            return engine.list_tasks(subscription.user_id, subscription.organization_id, room_id=subscription.room_id)
        finally:
            db.close()

    return fetch


class NotificationPoller:
    """Watermark subscriptions plus the asyncio loops that poll them."""

    def __init__(
        self,
        source: TaskSource,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
    ):
        self._source = source
        self._clock = clock
        self.settings = settings or app_settings
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Subscription] = {}
        self._runners: Dict[str, asyncio.Task] = {}

    def subscribe(self, user_id: str, organization_id: str, room_id: Optional[str] = None) -> Subscription:
        now = self._clock()
        self.prune_idle(now)
        subscription = Subscription(
            id=uuid.uuid4().hex,
            user_id=user_id,
            organization_id=organization_id,
            room_id=room_id,
            last_checked=now,
            last_activity=now,
        )
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        logger.debug(
            "Subscription %s started user=%s org=%s room=%s",
            subscription.id, user_id, organization_id, room_id,
        )
        return subscription

    def get(self, subscription_id: str) -> Subscription:
        with self._lock:
            subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFound("Subscription not found")
        return subscription

    def is_active(self, subscription_id: str) -> bool:
        with self._lock:
            return subscription_id in self._subscriptions

    def unsubscribe(self, subscription_id: str) -> None:
        """Drop the subscription's state and stop scheduling its ticks."""
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            runner = self._runners.pop(subscription_id, None)
        if subscription is None:
            raise NotFound("Subscription not found")
        if runner is not None and not runner.done():
            runner.cancel()
        logger.debug("Subscription %s stopped", subscription_id)

    def prune_idle(self, now: Optional[datetime] = None) -> List[str]:
        """Drop subscriptions without a running loop that nobody polled within the TTL."""
        now = now or self._clock()
        ttl = timedelta(seconds=self.settings.NOTIFICATION_SUBSCRIPTION_TTL_SECONDS)
        with self._lock:
            expired = [
                subscription_id
                for subscription_id, subscription in self._subscriptions.items()
                if subscription_id not in self._runners and now - subscription.last_activity > ttl
            ]
            for subscription_id in expired:
                del self._subscriptions[subscription_id]
        if expired:
            logger.info("Dropped %s idle subscription(s)", len(expired))
        return expired

    def poll(self, subscription_id: str) -> List[TaskDetailResponse]:
        """Run one tick and return the newly created tasks, newest first."""
        subscription = self.get(subscription_id)
        now = self._clock()
        subscription.last_activity = now

        try:
            tasks = self._source(subscription)
        except Exception:
            logger.exception(
                "New-task check failed for subscription %s; keeping watermark %s",
                subscription_id, subscription.last_checked.isoformat(),
            )
            return []

        batch = select_new_tasks(tasks, subscription.last_checked, now)
        subscription.last_checked = max(subscription.last_checked, now)

        if batch:
            logger.info(
                "%s new task(s) for user=%s room=%s",
                len(batch), subscription.user_id, subscription.room_id,
            )
        return batch

    async def run(
        self,
        subscription_id: str,
        on_batch: BatchHandler,
        interval_seconds: Optional[float] = None,
    ) -> None:
        """
        Poll every ``interval_seconds`` until the subscription is removed.

        Non-empty batches are handed to ``on_batch`` (plain or async callable).
        """
        interval = interval_seconds or self.settings.NOTIFICATION_POLL_INTERVAL_SECONDS
        sleep_s = max(0.01, float(interval))

        while self.is_active(subscription_id):
            batch = self.poll(subscription_id)
            if batch:
                try:
                    result = on_batch(self.get(subscription_id), batch)
                    if inspect.isawaitable(result):
                        await result
                except NotFound:
                    break
                except Exception:
                    logger.exception("Notification handler failed for subscription %s", subscription_id)
            await asyncio.sleep(sleep_s)

    def start(
        self,
        user_id: str,
        organization_id: str,
        on_batch: BatchHandler,
        room_id: Optional[str] = None,
        interval_seconds: Optional[float] = None,
    ) -> Subscription:
        """Subscribe and schedule the polling loop on the running event loop."""
        subscription = self.subscribe(user_id, organization_id, room_id=room_id)
        runner = asyncio.get_running_loop().create_task(
            self.run(subscription.id, on_batch, interval_seconds=interval_seconds)
        )
        with self._lock:
            self._runners[subscription.id] = runner
        return subscription

    async def stop_all(self) -> None:
        with self._lock:
            subscription_ids = list(self._subscriptions)
            runners = list(self._runners.values())
        for subscription_id in subscription_ids:
            try:
                self.unsubscribe(subscription_id)
            except NotFound:
                continue
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
