from __future__ import annotations

import asyncio

import aiosqlite
import pytest

from custodian.database import connect, transaction
from custodian.errors import InvalidParameters, NotFound, PostsExist, Unauthorized, ValidationError


async def _posts(h, author_id: int, *raws: str) -> None:
    async with transaction(h.path) as db:
        for raw in raws:
            await h.custodian.posts.create(db, author_id, raw, h.clock())


def test_disable_second_factor_with_nothing_enrolled(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("plain")

        with pytest.raises(InvalidParameters) as excinfo:
            await h.engine.disable_second_factor(admin.id, user.id)
        assert excinfo.value.status == 400

        await h.run_tasks()
        assert h.sender.sent == []
        assert await h.audit_kinds(user.id) == []

    asyncio.run(scenario())


def test_disable_second_factor_destroys_both_sets_then_notifies(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("secure")
        async with transaction(h.path) as db:
            await h.custodian.accounts.add_second_factor(db, user.id, "totp", h.clock())
            await h.custodian.accounts.add_security_key(db, user.id, "key-1", h.clock())

        await h.engine.disable_second_factor(admin.id, user.id)

        async with connect(h.path) as db:
            assert await h.custodian.accounts.count_second_factors(db, user.id) == 0
            assert await h.custodian.accounts.count_security_keys(db, user.id) == 0
        await h.run_tasks()
        assert h.sender.kinds() == ["second-factor-disabled"]
        assert await h.audit_kinds(user.id) == ["disable_second_factor_auth"]

    asyncio.run(scenario())


def test_reset_bounce_score(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("bouncy")

        assert await h.engine.reset_bounce_score(mod.id, user.id) is False
        assert await h.audit_kinds(user.id) == []

        async with transaction(h.path) as db:
            await h.custodian.accounts.set_bounce_score(db, user.id, 7.5)
        assert await h.engine.reset_bounce_score(mod.id, user.id) is True
        async with connect(h.path) as db:
            assert await h.custodian.accounts.bounce_score(db, user.id) == 0
        assert await h.audit_kinds(user.id) == ["reset_bounce_score"]

    asyncio.run(scenario())


def test_anonymize_scrubs_identity_but_keeps_posts(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("realname", name="Real Name", bio="about me", ip_address="10.1.1.1")
        await _posts(h, user.id, "my words")
        async with transaction(h.path) as db:
            await h.custodian.accounts.add_auth_token(db, user.id, h.clock())
            await h.custodian.accounts.add_sso_record(db, user.id, "ext-1", h.clock())

        result = await h.engine.anonymize(admin.id, user.id, anonymize_ip="0.0.0.0")

        assert result.success is True
        assert result.username.startswith("anon")
        scrubbed = await h.reload(user.id)
        assert scrubbed.username == result.username
        assert scrubbed.email == f"{result.username}@anonymized.invalid"
        assert scrubbed.name is None and scrubbed.bio is None
        assert scrubbed.ip_address == "0.0.0.0"
        assert scrubbed.anonymized is True
        async with connect(h.path) as db:
            assert await h.custodian.accounts.count_auth_tokens(db, user.id) == 0
            assert not await h.custodian.accounts.has_sso_record(db, user.id)
            assert await h.custodian.posts.count_live_by_author(db, user.id) == 1

        with pytest.raises(Unauthorized):
            await h.engine.anonymize(admin.id, user.id)

    asyncio.run(scenario())


def test_anonymize_refuses_staff(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        mod = await h.moderator()

        with pytest.raises(Unauthorized):
            await h.engine.anonymize(admin.id, mod.id)
        assert (await h.reload(mod.id)).username == "mod"

    asyncio.run(scenario())


def test_anonymize_storage_failure_returns_snapshot(make_harness, monkeypatch) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("victim", name="Victim", bio="hello")
        before = await h.reload(user.id)

        async def broken(db, account_id):
            raise aiosqlite.OperationalError("database is locked")

        monkeypatch.setattr(h.custodian.accounts, "delete_email_tokens", broken)

        result = await h.engine.anonymize(admin.id, user.id)

        assert result.success is False
        assert result.account == before
        assert await h.reload(user.id) == before
        assert await h.audit_kinds(user.id) == []
        assert "user_anonymized" not in h.event_names()

    asyncio.run(scenario())


def test_destroy_storage_failure_returns_snapshot(make_harness, monkeypatch) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("doomed")
        await _posts(h, user.id, "only post")
        before = await h.reload(user.id)

        async def broken(db, author_id):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(h.custodian.posts, "delete_by_author", broken)

        result = await h.engine.destroy(admin.id, user.id, delete_posts=True, block_email=True)

        assert result.deleted is False
        assert result.account == before
        assert await h.reload(user.id) == before
        assert await h.audit_kinds(user.id) == []
        async with connect(h.path) as db:
            assert await h.custodian.posts.count_live_by_author(db, user.id) == 1
            assert not await h.custodian.screening.is_blocked(db, "email", user.email)

    asyncio.run(scenario())


def test_destroy_refuses_when_posts_exist(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("author")
        await _posts(h, user.id, "one", "two")

        with pytest.raises(PostsExist) as excinfo:
            await h.engine.destroy(admin.id, user.id)

        assert excinfo.value.count == 2
        assert excinfo.value.to_dict()["deleted"] is False
        assert await h.reload(user.id) is not None

    asyncio.run(scenario())


def test_destroy_with_delete_posts_runs_inline_and_blocks_identifiers(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("spammer", ip_address="203.0.113.9")
        await _posts(h, user.id, "visit https://Spam.example/deal now", "and http://cheap.example")

        result = await h.engine.destroy(
            admin.id,
            user.id,
            delete_posts=True,
            block_email=True,
            block_ip=True,
            block_urls=True,
            delete_as_spammer=True,
            context="spam wave",
        )

        assert result.deleted is True
        assert await h.reload(user.id) is None
        async with connect(h.path) as db:
            screening = h.custodian.screening
            assert await screening.is_blocked(db, "email", "spammer@example.com")
            assert await screening.is_blocked(db, "ip", "203.0.113.9")
            assert {e.value for e in await screening.list_kind(db, "domain")} == {"spam.example", "cheap.example"}
            assert await h.custodian.posts.count_live_by_author(db, user.id) == 0
            records = await h.custodian.audit.list_for_account(db, user.id)
        assert records[0].kind == "delete_user"
        assert records[0].details["posts_deleted"] == 2
        assert records[0].details["delete_as_spammer"] is True
        assert records[0].context == "spam wave"
        assert "user_destroyed" in h.event_names()

    asyncio.run(scenario())


def test_large_destroy_is_deferred_to_a_task(make_harness) -> None:
    async def scenario():
        h = await make_harness(destroy_inline_post_limit=2)
        admin = await h.admin()
        user = await h.account("prolific")
        await _posts(h, user.id, "a", "b", "c")

        result = await h.engine.destroy(admin.id, user.id, delete_posts=True)

        assert result.deleted is False
        assert result.scheduled is True
        assert result.account.id == user.id
        assert await h.reload(user.id) is not None

        await h.run_tasks()
        assert await h.reload(user.id) is None
        assert "delete_user" in await h.audit_kinds(user.id)

    asyncio.run(scenario())


def test_delete_posts_batch_soft_deletes_up_to_batch_size(make_harness) -> None:
    async def scenario():
        h = await make_harness(post_delete_batch_size=2)
        mod = await h.moderator()
        user = await h.account("author")
        await _posts(h, user.id, "a", "b", "c")

        assert await h.engine.delete_posts_batch(mod.id, user.id) == 2
        assert await h.engine.delete_posts_batch(mod.id, user.id) == 1
        assert await h.engine.delete_posts_batch(mod.id, user.id) == 0
        assert (await h.audit_kinds(user.id)).count("delete_post") == 3

        # soft-deleted posts no longer block a plain destroy
        assert (await h.engine.destroy(mod.id, user.id)).deleted is True

    asyncio.run(scenario())


def test_merge_is_deferred_and_moves_content(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        source = await h.account("old_handle")
        target = await h.account("new_handle")
        await _posts(h, source.id, "first", "second")
        async with transaction(h.path) as db:
            group = await h.custodian.groups.create(db, "regulars")
            await h.custodian.groups.add_member(db, group.id, source.id)

        accepted = await h.engine.merge(admin.id, source.id, "NEW_HANDLE")

        assert accepted.accepted is True
        assert accepted.task_key
        assert await h.reload(source.id) is not None

        await h.run_tasks()
        assert await h.reload(source.id) is None
        async with connect(h.path) as db:
            assert await h.custodian.posts.count_live_by_author(db, target.id) == 2
            assert await h.custodian.groups.is_member(db, group.id, target.id)
        assert "merge_user" in await h.audit_kinds(target.id)
        assert "user_merged" in h.event_names()

    asyncio.run(scenario())


def test_merge_validation(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        mod = await h.moderator()
        source = await h.account("source")

        with pytest.raises(NotFound):
            await h.engine.merge(admin.id, source.id, "nobody")
        with pytest.raises(Unauthorized):
            await h.engine.merge(admin.id, source.id, "mod")
        accepted = await h.engine.merge(admin.id, source.id, "mod", confirm_privileged_target=True)
        assert accepted.accepted is True

    asyncio.run(scenario())


def test_failed_merge_is_reported_through_audit_and_notification(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        source = await h.account("source")
        target = await h.account("target")

        await h.engine.merge(admin.id, source.id, "target")
        async with transaction(h.path) as db:
            await h.custodian.accounts.delete(db, target.id)

        await h.run_tasks()

        assert await h.reload(source.id) is not None
        assert await h.audit_kinds(source.id) == ["task_failed"]
        assert h.sender.kinds() == ["task-failed"]
        assert h.sender.sent[0].target_id == admin.id
        assert h.sender.sent[0].payload["task_kind"] == "merge_account"
        assert h.custodian.stats.tasks_failed == 1

    asyncio.run(scenario())


def test_same_ip_cleanup_respects_cap_and_skips_staff(make_harness) -> None:
    async def scenario():
        h = await make_harness(same_ip_delete_cap=2)
        admin = await h.admin()
        keeper = await h.account("keeper", ip_address="198.51.100.7")
        await h.account("staffer", moderator=True, ip_address="198.51.100.7")
        sock_a = await h.account("sock_a", ip_address="198.51.100.7", trust_level=0)
        sock_b = await h.account("sock_b", registration_ip="198.51.100.7", trust_level=2)
        sock_c = await h.account("sock_c", ip_address="198.51.100.7", trust_level=1)

        assert await h.engine.count_other_accounts_with_same_ip(admin.id, "198.51.100.7", exclude_id=keeper.id) == 3

        accepted = await h.engine.delete_other_accounts_with_same_ip(
            admin.id, "198.51.100.7", exclude_id=keeper.id, order="trust_level", limit=500
        )
        assert accepted.accepted is True
        await h.run_tasks()

        assert await h.reload(sock_b.id) is None
        assert await h.reload(sock_c.id) is None
        assert await h.reload(sock_a.id) is not None
        assert await h.reload(keeper.id) is not None
        assert await h.engine.count_other_accounts_with_same_ip(admin.id, "198.51.100.7", exclude_id=keeper.id) == 1

        async with connect(h.path) as db:
            assert await h.custodian.screening.is_blocked(db, "ip", "198.51.100.7")
            records = await h.custodian.audit.list_for_account(db, sock_b.id)
        assert records[0].context == "Same IP address (198.51.100.7) as other users"

    asyncio.run(scenario())


@pytest.mark.parametrize("ip, order", [("", "trust_level"), (None, "trust_level"), ("10.0.0.1", "username")])
def test_same_ip_parameters_are_validated(make_harness, ip, order) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()

        with pytest.raises(ValidationError):
            await h.engine.delete_other_accounts_with_same_ip(admin.id, ip, order=order)

    asyncio.run(scenario())


def test_approve_and_approve_bulk(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        first = await h.account("first")
        second = await h.account("second")
        done = await h.account("done", approved=True)
        async with transaction(h.path) as db:
            await h.custodian.reviews.create(db, first.id, h.clock())

        approved = await h.engine.approve(mod.id, first.id)
        assert approved.approved is True
        assert approved.approved_by_id == mod.id
        assert approved.approved_at == h.clock()
        async with connect(h.path) as db:
            reviewable = await h.custodian.reviews.find_for_account(db, first.id)
        assert reviewable.status == "approved"

        result = await h.engine.approve_bulk(mod.id, ["abc", second.id, 9999, None, done.id])
        assert result.approved == [second.id]
        assert set(result.failed) == {"abc", 9999, None, done.id}
        assert result.failed["abc"] == "Invalid account id."
        assert (await h.reload(second.id)).approved is True

    asyncio.run(scenario())


def test_activate_reuses_or_creates_email_token(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        fresh = await h.account("fresh", active=False)
        pending = await h.account("pending", active=False)
        async with transaction(h.path) as db:
            existing = await h.custodian.accounts.create_email_token(db, pending.id, pending.email, h.clock())

        assert (await h.engine.activate(mod.id, fresh.id)).active is True
        assert (await h.engine.activate(mod.id, pending.id)).active is True

        async with connect(h.path) as db:
            fresh_tokens = await h.custodian.accounts.list_email_tokens(db, fresh.id)
            pending_tokens = await h.custodian.accounts.list_email_tokens(db, pending.id)
        assert len(fresh_tokens) == 1 and fresh_tokens[0].confirmed
        assert [t.id for t in pending_tokens] == [existing.id]
        assert pending_tokens[0].confirmed

    asyncio.run(scenario())


def test_deactivate_refreshes_clients(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("leaving")

        with pytest.raises(Unauthorized):
            await h.engine.deactivate(mod.id, mod.id)

        result = await h.engine.deactivate(mod.id, user.id, context="requested by user")
        assert result.active is False

        refresh = [e for e in h.events if e.name == "client_refresh"]
        assert refresh and refresh[0].payload["account_ids"] == [user.id]
        async with connect(h.path) as db:
            records = await h.custodian.audit.list_for_account(db, user.id)
        assert records[0].kind == "deactivate_user"
        assert records[0].context == "requested by user"

    asyncio.run(scenario())


def test_log_out_destroys_sessions(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        mod = await h.moderator()
        user = await h.account("online")
        async with transaction(h.path) as db:
            await h.custodian.accounts.add_auth_token(db, user.id, h.clock())
            await h.custodian.accounts.add_auth_token(db, user.id, h.clock())

        assert await h.engine.log_out(mod.id, user.id) == 2
        assert "user_logged_out" in h.event_names()
        with pytest.raises(NotFound):
            await h.engine.log_out(mod.id, 9999)

    asyncio.run(scenario())


def test_delete_sso_record(make_harness) -> None:
    async def scenario():
        h = await make_harness()
        admin = await h.admin()
        user = await h.account("sso")

        with pytest.raises(NotFound):
            await h.engine.delete_sso_record(admin.id, user.id)

        async with transaction(h.path) as db:
            await h.custodian.accounts.add_sso_record(db, user.id, "ext-42", h.clock())
        await h.engine.delete_sso_record(admin.id, user.id)

        async with connect(h.path) as db:
            assert not await h.custodian.accounts.has_sso_record(db, user.id)
        assert await h.audit_kinds(user.id) == ["delete_sso_record"]

    asyncio.run(scenario())
