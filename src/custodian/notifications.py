from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .services.stats import RuntimeStats
from .tasks import Task, TaskQueue
from .utils import from_iso, to_iso, utcnow

log = logging.getLogger("custodian.notifications")

DELIVER_TASK = "deliver_notification"


@dataclass(frozen=True)
class Notification:
    kind: str
    target_id: int
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)


Sender = Callable[[Notification], Awaitable[None]]


async def log_sender(notification: Notification) -> None:
    log.info(
        "notify %s -> account %s: %s",
        notification.kind,
        notification.target_id,
        notification.payload,
    )


class NotificationDispatcher:
    """Fire-and-forget outbound messages.

    ``enqueue`` only puts a delivery task on the queue. Delivery happens when
    the queue runs it, and a delivery failure stays inside the dispatcher.
    """

    def __init__(
        self,
        queue: TaskQueue,
        sender: Optional[Sender] = None,
        stats: Optional[RuntimeStats] = None,
    ) -> None:
        self._queue = queue
        self._sender = sender or log_sender
        self._stats = stats
        queue.register(DELIVER_TASK, self._deliver)

    async def enqueue(self, kind: str, target_id: int, payload: Optional[dict[str, Any]] = None) -> Optional[str]:
        notification = Notification(kind=kind, target_id=int(target_id), payload=dict(payload or {}))
        task = Task(
            kind=DELIVER_TASK,
            account_id=notification.target_id,
            actor_id=None,
            options={
                "kind": notification.kind,
                "payload": notification.payload,
                "created_at": to_iso(notification.created_at),
            },
        )
        try:
            await self._queue.submit(task)
        except RuntimeError:
            log.error("Dropping %s notification for account %s: queue full", kind, target_id)
            return None
        return task.key

    async def _deliver(self, task: Task) -> None:
        notification = Notification(
            kind=str(task.options["kind"]),
            target_id=int(task.account_id or 0),
            payload=dict(task.options.get("payload") or {}),
            created_at=from_iso(task.options.get("created_at")) or utcnow(),
        )
        try:
            await self._sender(notification)
        except Exception:
            if self._stats is not None:
                self._stats.notifications_failed += 1
            log.exception("Failed to deliver %s notification to account %s", notification.kind, notification.target_id)
            return
        if self._stats is not None:
            self._stats.notifications_sent += 1
