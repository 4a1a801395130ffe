from __future__ import annotations

import asyncio

import pytest

from custodian.database import connect, transaction
from custodian.errors import InvalidAccess, InvalidParameters, NotFound, Unauthorized, ValidationError
from custodian.utils import hash_token


def test_grant_admin_only_requests_confirmation(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("candidate")

        accepted = await h.engine.grant_admin(admin.id, user.id)

        assert accepted.accepted is True
        assert (await h.reload(user.id)).admin is False
        assert await h.audit_kinds(user.id) == ["grant_admin_requested"]

        await h.run_tasks()
        assert h.sender.kinds() == ["admin-confirmation"]
        confirmation = h.sender.sent[0]
        assert confirmation.target_id == admin.id
        assert confirmation.payload["account_id"] == user.id

        granted = await h.engine.confirm_admin(admin.id, confirmation.payload["token"])
        assert granted.admin is True
        assert await h.audit_kinds(user.id) == ["grant_admin_requested", "grant_admin"]
        assert "user_role_changed" in h.event_names()

        with pytest.raises(NotFound):
            await h.engine.confirm_admin(admin.id, confirmation.payload["token"])

    asyncio.run(scenario())


def test_admin_confirmation_token_is_stored_hashed(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("candidate")

        await h.engine.grant_admin(admin.id, user.id)
        await h.run_tasks()
        token = h.sender.sent[0].payload["token"]

        async with connect(h.path) as db:
            async with db.execute("SELECT token_hash FROM admin_confirmations") as cur:
                stored = [row["token_hash"] for row in await cur.fetchall()]
            pending = await h.custodian.confirmations.get(db, token)

        assert stored == [hash_token(token)]
        assert token not in stored
        assert pending.account_id == user.id
        assert pending.token is None

    asyncio.run(scenario())


def test_expired_admin_confirmation_is_refused_and_discarded(make_harness) -> None:
    async def scenario():
        h = await make_harness(admin_confirmation_ttl_hours=24)
        admin = await h.admin()
        user = await h.account("late")

        await h.engine.grant_admin(admin.id, user.id)
        await h.run_tasks()
        token = h.sender.sent[0].payload["token"]

        h.clock.advance(hours=25)
        with pytest.raises(InvalidAccess):
            await h.engine.confirm_admin(admin.id, token)
        with pytest.raises(NotFound):
            await h.engine.confirm_admin(admin.id, token)
        assert (await h.reload(user.id)).admin is False

    asyncio.run(scenario())


def test_admin_confirmation_belongs_to_requesting_operator(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin("first")
        other = await h.admin("second")
        user = await h.account("candidate")

        await h.engine.grant_admin(admin.id, user.id)
        await h.run_tasks()
        token = h.sender.sent[0].payload["token"]

        with pytest.raises(InvalidAccess):
            await h.engine.confirm_admin(other.id, token)
        assert (await h.reload(user.id)).admin is False

    asyncio.run(scenario())


def test_revoke_admin_and_moderation(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin("root")
        other = await h.admin("deputy")
        mod = await h.moderator()

        with pytest.raises(Unauthorized):
            await h.engine.revoke_admin(admin.id, admin.id)

        assert (await h.engine.revoke_admin(admin.id, other.id)).admin is False
        assert (await h.engine.revoke_moderation(admin.id, mod.id)).moderator is False
        assert (await h.engine.grant_moderation(admin.id, mod.id)).moderator is True

        with pytest.raises(Unauthorized):
            await h.engine.grant_moderation(admin.id, mod.id)
        assert await h.audit_kinds(mod.id) == ["revoke_moderation", "grant_moderation"]

    asyncio.run(scenario())


def test_automatic_group_membership_cannot_be_edited(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("member")
        async with transaction(h.path) as db:
            auto = await h.custodian.groups.create(db, "trust_level_1", automatic=True)
            await h.custodian.groups.add_member(db, auto.id, user.id)
            other_auto = await h.custodian.groups.create(db, "staff", automatic=True)

        with pytest.raises(InvalidParameters):
            await h.engine.remove_group(admin.id, user.id, auto.id)
        with pytest.raises(InvalidParameters):
            await h.engine.add_group(admin.id, user.id, other_auto.id)

        async with connect(h.path) as db:
            assert await h.custodian.groups.is_member(db, auto.id, user.id)
            assert not await h.custodian.groups.is_member(db, other_auto.id, user.id)
        assert await h.audit_kinds(user.id) == []

    asyncio.run(scenario())


def test_add_and_remove_custom_group(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        mod = await h.moderator()
        user = await h.account("member")
        async with transaction(h.path) as db:
            group = await h.custodian.groups.create(db, "helpers")

        with pytest.raises(Unauthorized):
            await h.engine.add_group(mod.id, user.id, group.id)
        with pytest.raises(NotFound):
            await h.engine.add_group(admin.id, user.id, 404)

        assert await h.engine.add_group(admin.id, user.id, group.id) is True
        assert await h.engine.add_group(admin.id, user.id, group.id) is False
        await h.engine.set_primary_group(admin.id, user.id, group.id)

        assert await h.engine.remove_group(admin.id, user.id, group.id) is True
        assert await h.engine.remove_group(admin.id, user.id, group.id) is False
        assert (await h.reload(user.id)).primary_group_id is None
        assert await h.audit_kinds(user.id) == ["add_to_group", "change_primary_group", "remove_from_group"]

    asyncio.run(scenario())


def test_primary_group_requires_membership(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("member")
        async with transaction(h.path) as db:
            group = await h.custodian.groups.create(db, "designers")

        with pytest.raises(ValidationError):
            await h.engine.set_primary_group(mod.id, user.id, group.id)
        with pytest.raises(NotFound):
            await h.engine.set_primary_group(mod.id, user.id, 404)

        async with transaction(h.path) as db:
            await h.custodian.groups.add_member(db, group.id, user.id)
        assert (await h.engine.set_primary_group(mod.id, user.id, group.id)).primary_group_id == group.id
        assert (await h.engine.set_primary_group(mod.id, user.id, None)).primary_group_id is None

    asyncio.run(scenario())
