from __future__ import annotations

import asyncio

import aiosqlite
import pytest

from custodian.errors import InvalidAccess, Unauthorized, ValidationError


def test_auto_lock_when_next_level_criteria_met(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("climber", trust_level=2)
        h.promotion.met[2] = True

        updated = await h.engine.set_trust_level(mod.id, user.id, 1)

        assert updated.trust_level == 1
        assert updated.manual_locked_trust_level == 1
        assert await h.audit_kinds(user.id) == ["change_trust_level"]
        assert "user_trust_level_changed" in h.event_names()

    asyncio.run(scenario())


def test_no_lock_when_predicate_rejects_but_level_still_applies(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("steady")
        h.promotion.met[3] = False

        updated = await h.engine.set_trust_level(mod.id, user.id, 2)

        assert updated.trust_level == 2
        assert updated.manual_locked_trust_level is None

    asyncio.run(scenario())


@pytest.mark.parametrize("lost, expected_lock", [(True, 3), (False, None)])
def test_level_three_locks_only_when_eligibility_lost(make_harness, lost, expected_lock) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("regular", trust_level=3)
        h.promotion.lost_tl3 = lost

        updated = await h.engine.set_trust_level(admin.id, user.id, 3)

        assert updated.manual_locked_trust_level == expected_lock

    asyncio.run(scenario())


def test_existing_lock_is_left_alone(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("pinned", trust_level=1, manual_locked_trust_level=1)
        h.promotion.met[1] = True

        updated = await h.engine.set_trust_level(mod.id, user.id, 0)

        assert updated.trust_level == 0
        assert updated.manual_locked_trust_level == 1

    asyncio.run(scenario())


def test_auto_lock_survives_failed_level_write(make_harness, monkeypatch) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("fragile", trust_level=2)
        h.promotion.met[1] = True

        original_update = h.custodian.accounts.update

        async def failing_update(db, account_id, **fields):
            if "trust_level" in fields:
                raise aiosqlite.OperationalError("disk I/O error")
            return await original_update(db, account_id, **fields)

        monkeypatch.setattr(h.custodian.accounts, "update", failing_update)

        with pytest.raises(aiosqlite.OperationalError):
            await h.engine.set_trust_level(mod.id, user.id, 0)

        reloaded = await h.reload(user.id)
        assert reloaded.manual_locked_trust_level == 0
        assert reloaded.trust_level == 2
        assert await h.audit_kinds(user.id) == []

    asyncio.run(scenario())


def test_guard_failure_is_invalid_access_without_audit(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        admin = await h.admin()
        user = await h.account("regular")
        h.promotion.met[1] = True

        with pytest.raises(InvalidAccess) as excinfo:
            await h.engine.set_trust_level(mod.id, admin.id, 0)
        assert isinstance(excinfo.value, Unauthorized)

        with pytest.raises(InvalidAccess):
            await h.engine.set_trust_level(user.id, user.id, 0)

        assert await h.audit_kinds(admin.id) == []
        assert (await h.reload(admin.id)).manual_locked_trust_level is None

    asyncio.run(scenario())


@pytest.mark.parametrize("level", [5, -1, "two", None, True, 1.5])
def test_invalid_levels_are_rejected(make_harness, level) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("regular")

        with pytest.raises(ValidationError):
            await h.engine.set_trust_level(mod.id, user.id, level)
        assert (await h.reload(user.id)).trust_level == 0

    asyncio.run(scenario())


def test_lock_trust_level_pins_current_level_and_recalculates(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("veteran", trust_level=3)

        locked = await h.engine.lock_trust_level(admin.id, user.id, True)
        assert locked.manual_locked_trust_level == 3

        unlocked = await h.engine.lock_trust_level(admin.id, user.id, "FALSE")
        assert unlocked.manual_locked_trust_level is None

        assert h.promotion.recalculated == [(user.id, admin.id), (user.id, admin.id)]
        assert await h.audit_kinds(user.id) == ["lock_trust_level", "lock_trust_level"]

    asyncio.run(scenario())


@pytest.mark.parametrize("value", ["yes", 1, None, "on"])
def test_lock_trust_level_needs_boolean_input(make_harness, value) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("regular", trust_level=2)

        with pytest.raises(ValidationError):
            await h.engine.lock_trust_level(admin.id, user.id, value)
        assert (await h.reload(user.id)).manual_locked_trust_level is None
        assert h.promotion.recalculated == []

    asyncio.run(scenario())
