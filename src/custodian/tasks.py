from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .services.idempotency_store import IdempotencyStore
from .services.stats import RuntimeStats
from .utils import to_iso, utcnow

log = logging.getLogger("custodian.queue")


@dataclass(frozen=True)
class Task:
    """A deferred unit of work.

    Carries everything a handler needs to run (or re-run) it: the account,
    the operator who asked for it and the option bundle. ``key`` identifies
    the task for replay detection.
    """

    kind: str
    account_id: Optional[int]
    actor_id: Optional[int]
    options: dict[str, Any] = field(default_factory=dict)
    key: str = field(default_factory=lambda: uuid.uuid4().hex)


TaskHandler = Callable[[Task], Awaitable[None]]
FailureHook = Callable[[Task, BaseException], Awaitable[None]]


@dataclass(frozen=True)
class QueuePolicy:
    max_batch: int = 4
    every_ms: int = 100
    max_queue_size: int = 10_000
    micro_sleep_seconds: float = 0.01


class TaskQueue:
    """Paced async task queue for work that must not run inside a command."""

    def __init__(
        self,
        policy: QueuePolicy,
        stats: RuntimeStats,
        idempotency: Optional[IdempotencyStore] = None,
    ) -> None:
        self._policy = policy
        self._stats = stats
        self._idem = idempotency
        self._q: asyncio.Queue[Task] = asyncio.Queue(maxsize=policy.max_queue_size)
        self._handlers: dict[str, TaskHandler] = {}
        self._failure_hooks: list[FailureHook] = []
        self._stop = asyncio.Event()
        self._runner: Optional[asyncio.Task[None]] = None

    def register(self, kind: str, handler: TaskHandler) -> None:
        if kind in self._handlers:
            raise ValueError(f"Handler already registered for task kind {kind!r}")
        self._handlers[kind] = handler

    def on_failure(self, hook: FailureHook) -> None:
        self._failure_hooks.append(hook)

    def start(self) -> None:
        if self._runner and not self._runner.done():
            return
        self._stop.clear()
        self._runner = asyncio.create_task(self._run(), name="custodian-task-queue")
        log.info(
            "TaskQueue started (max_batch=%s every_ms=%s max_size=%s)",
            self._policy.max_batch,
            self._policy.every_ms,
            self._policy.max_queue_size,
        )

    async def stop(self) -> None:
        self._stop.set()
        if self._runner:
            await self._runner
        log.info("TaskQueue stopped")

    def size(self) -> int:
        return self._q.qsize()

    async def submit(self, task: Task) -> None:
        if task.kind not in self._handlers:
            raise ValueError(f"No handler registered for task kind {task.kind!r}")
        try:
            self._q.put_nowait(task)
            self._stats.tasks_enqueued += 1
        except asyncio.QueueFull as e:
            raise RuntimeError("TaskQueue is full; refusing to enqueue more tasks") from e
        log.debug("Submitted %s task %s (account=%s actor=%s)", task.kind, task.key, task.account_id, task.actor_id)

    async def run_pending(self) -> int:
        """Run queued tasks until the queue is empty, including tasks submitted meanwhile."""
        ran = 0
        while True:
            try:
                task = self._q.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                await self._execute(task)
                ran += 1
            finally:
                self._q.task_done()
        return ran

    async def _execute(self, task: Task) -> None:
        if self._idem is not None:
            if not await self._idem.claim(task.key, task.kind, to_iso(utcnow())):
                self._stats.tasks_skipped += 1
                log.info("Skipping replayed %s task %s", task.kind, task.key)
                return

        handler = self._handlers[task.kind]
        try:
            await handler(task)
            self._stats.tasks_executed += 1
        except Exception as exc:
            self._stats.tasks_failed += 1
            log.exception("Queued %s task %s failed", task.kind, task.key)
            if self._idem is not None:
                await self._idem.release(task.key)
            for hook in self._failure_hooks:
                try:
                    await hook(task, exc)
                except Exception:
                    log.exception("Failure hook raised for %s task %s", task.kind, task.key)

    async def _run(self) -> None:
        tick_sleep = max(1, self._policy.every_ms) / 1000.0
        max_batch = max(1, self._policy.max_batch)
        micro = max(0.0, float(self._policy.micro_sleep_seconds))

        while not self._stop.is_set():
            batch: list[Task] = []
            for _ in range(max_batch):
                try:
                    batch.append(self._q.get_nowait())
                except asyncio.QueueEmpty:
                    break

            if not batch:
                await asyncio.sleep(tick_sleep)
                continue

            for task in batch:
                try:
                    await self._execute(task)
                finally:
                    self._q.task_done()

                if micro:
                    await asyncio.sleep(micro)

            await asyncio.sleep(tick_sleep)
