from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from custodian.config import Settings
from custodian.database import connect, transaction
from custodian.events import DomainEvent
from custodian.models import Account
from custodian.notifications import Notification
from custodian.runtime import Custodian


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePromotion:
    def __init__(self) -> None:
        self.met: dict[int, bool] = {}
        self.lost_tl3 = False
        self.recalculated: list[tuple[int, int]] = []

    async def met_criteria(self, account: Account, level: int) -> bool:
        return self.met.get(level, False)

    async def tl3_lost(self, account: Account) -> bool:
        return self.lost_tl3

    async def recalculate(self, account: Account, performed_by: Account) -> None:
        self.recalculated.append((account.id, performed_by.id))


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def __call__(self, notification: Notification) -> None:
        self.sent.append(notification)

    def kinds(self) -> list[str]:
        return [n.kind for n in self.sent]


@dataclass
class Harness:
    custodian: Custodian
    clock: FakeClock
    promotion: FakePromotion
    sender: RecordingSender
    events: list[DomainEvent] = field(default_factory=list)

    @property
    def engine(self):
        return self.custodian.engine

    @property
    def path(self) -> str:
        return self.custodian.settings.sqlite_path

    async def account(self, username: str, **fields: Any) -> Account:
        fields.setdefault("active", True)
        async with transaction(self.path) as db:
            return await self.custodian.accounts.create(
                db,
                username=username,
                email=f"{username}@example.com",
                created_at=self.clock(),
                **fields,
            )

    async def admin(self, username: str = "admin") -> Account:
        return await self.account(username, admin=True)

    async def moderator(self, username: str = "mod") -> Account:
        return await self.account(username, moderator=True)

    async def reload(self, account_id: int) -> Optional[Account]:
        async with connect(self.path) as db:
            return await self.custodian.accounts.get(db, account_id)

    async def audit_kinds(self, account_id: int) -> list[str]:
        async with connect(self.path) as db:
            records = await self.custodian.audit.list_for_account(db, account_id, limit=500)
        return [r.kind for r in reversed(records)]

    async def run_tasks(self) -> int:
        return await self.custodian.task_queue.run_pending()

    def event_names(self) -> list[str]:
        return [e.name for e in self.events]


@pytest.fixture
def make_harness(tmp_path):
    """Factory for a fully wired engine on a fresh database. Call inside the running loop."""

    async def _make(**overrides: Any) -> Harness:
        settings = replace(Settings(sqlite_path=str(tmp_path / "custodian.sqlite3"), queue_every_ms=1), **overrides)
        clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        promotion = FakePromotion()
        sender = RecordingSender()
        custodian = Custodian(settings, promotion=promotion, sender=sender, clock=clock)
        await custodian.setup()

        harness = Harness(custodian=custodian, clock=clock, promotion=promotion, sender=sender)
        custodian.events.subscribe("*", harness.events.append)
        return harness

    return _make
