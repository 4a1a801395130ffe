from __future__ import annotations

import logging
from typing import Optional

from .cascade import CascadeExecutor
from .config import Settings
from .database import initialize_database
from .engine import StateTransitionEngine
from .events import EventPublisher
from .guard import AuthorizationGuard
from .notifications import NotificationDispatcher, Sender
from .promotion import NullPromotion, Promotion
from .services.account_store import AccountStore
from .services.audit_log import AuditLogger
from .services.base import BaseService
from .services.confirmation_store import AdminConfirmationStore
from .services.group_store import GroupStore
from .services.idempotency_store import IdempotencyStore
from .services.penalty_store import PenaltyStore
from .services.post_store import PostStore
from .services.review_store import ReviewStore
from .services.screening_store import ScreeningStore
from .services.stats import RuntimeStats
from .tasks import QueuePolicy, TaskQueue

log = logging.getLogger("custodian.runtime")


class Custodian:
    """Wires stores, queue, dispatcher, publisher, guard, cascade and engine together."""

    def __init__(
        self,
        settings: Settings,
        *,
        promotion: Optional[Promotion] = None,
        sender: Optional[Sender] = None,
        clock=None,
    ) -> None:
        self.settings = settings
        self.stats = RuntimeStats()

        self.accounts = AccountStore(settings.sqlite_path)
        self.groups = GroupStore(settings.sqlite_path)
        self.posts = PostStore(settings.sqlite_path)
        self.penalties = PenaltyStore(settings.sqlite_path)
        self.screening = ScreeningStore(settings.sqlite_path)
        self.reviews = ReviewStore(settings.sqlite_path)
        self.confirmations = AdminConfirmationStore(settings.sqlite_path)
        self.audit = AuditLogger(settings.sqlite_path)
        self.idempotency = IdempotencyStore(settings.sqlite_path)

        self.task_queue = TaskQueue(
            QueuePolicy(
                max_batch=settings.queue_max_batch,
                every_ms=settings.queue_every_ms,
                max_queue_size=settings.queue_max_size,
            ),
            stats=self.stats,
            idempotency=self.idempotency if settings.task_idempotency_enabled else None,
        )
        self.notifications = NotificationDispatcher(self.task_queue, sender=sender, stats=self.stats)
        self.events = EventPublisher(self.stats)
        self.guard = AuthorizationGuard()
        self.cascade = CascadeExecutor(
            settings.sqlite_path,
            guard=self.guard,
            accounts=self.accounts,
            groups=self.groups,
            posts=self.posts,
            penalties=self.penalties,
            screening=self.screening,
            reviews=self.reviews,
            confirmations=self.confirmations,
            audit=self.audit,
            stats=self.stats,
        )
        engine_kwargs = {"clock": clock} if clock is not None else {}
        self.engine = StateTransitionEngine(
            settings,
            guard=self.guard,
            accounts=self.accounts,
            groups=self.groups,
            posts=self.posts,
            penalties=self.penalties,
            reviews=self.reviews,
            confirmations=self.confirmations,
            audit=self.audit,
            cascade=self.cascade,
            notifications=self.notifications,
            events=self.events,
            queue=self.task_queue,
            promotion=promotion or NullPromotion(),
            stats=self.stats,
            **engine_kwargs,
        )

    @property
    def stores(self) -> list[BaseService]:
        return [
            self.accounts,
            self.groups,
            self.posts,
            self.penalties,
            self.screening,
            self.reviews,
            self.confirmations,
            self.audit,
            self.idempotency,
        ]

    async def setup(self) -> None:
        await initialize_database(self.settings.sqlite_path, self.stores)

    def start(self) -> None:
        self.task_queue.start()

    async def close(self) -> None:
        await self.task_queue.stop()
        log.info(
            "Shutting down after %ss: %d tasks executed, %d failed, %d notifications sent",
            self.stats.uptime_seconds(),
            self.stats.tasks_executed,
            self.stats.tasks_failed,
            self.stats.notifications_sent,
        )
