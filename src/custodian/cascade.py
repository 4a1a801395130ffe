from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlsplit

import aiosqlite

from .constants import (
    POST_ACTION_DELETE,
    POST_ACTION_DELETE_REPLIES,
    POST_ACTION_EDIT,
    POST_ACTIONS,
)
from .database import transaction
from .guard import AuthorizationGuard
from .models import Account, DestroyOptions
from .services.account_store import AccountStore
from .services.audit_log import AuditLogger
from .services.confirmation_store import AdminConfirmationStore
from .services.group_store import GroupStore
from .services.penalty_store import PenaltyStore
from .services.post_store import PostStore
from .services.review_store import ReviewStore
from .services.screening_store import ScreeningStore
from .services.stats import RuntimeStats
from .utils import utcnow

log = logging.getLogger("custodian.cascade")

_URL_RE = re.compile(r"https?://[^\s<>()\[\]\"']+", re.IGNORECASE)


def url_domains(texts: list[str]) -> set[str]:
    """Hostnames of every http(s) link found in ``texts``."""
    domains: set[str] = set()
    for text in texts:
        for match in _URL_RE.findall(text or ""):
            try:
                host = urlsplit(match).hostname
            except ValueError:
                continue
            if host:
                domains.add(host.lower())
    return domains


class CascadeExecutor:
    """Secondary side effects attached to a primary transition.

    ``perform_post_action`` runs after the primary transition has committed and
    owns its own transaction; any failure there is logged and skipped. The
    account-level cascades (destroy, merge, batch post deletion) write through
    the caller's connection so they commit together with the caller's audit.
    """

    def __init__(
        self,
        sqlite_path: str,
        *,
        guard: AuthorizationGuard,
        accounts: AccountStore,
        groups: GroupStore,
        posts: PostStore,
        penalties: PenaltyStore,
        screening: ScreeningStore,
        reviews: ReviewStore,
        confirmations: AdminConfirmationStore,
        audit: AuditLogger,
        stats: Optional[RuntimeStats] = None,
    ) -> None:
        self._path = sqlite_path
        self.guard = guard
        self.accounts = accounts
        self.groups = groups
        self.posts = posts
        self.penalties = penalties
        self.screening = screening
        self.reviews = reviews
        self.confirmations = confirmations
        self.audit = audit
        self._stats = stats

    def _skip(self, message: str, *args: Any) -> bool:
        if self._stats is not None:
            self._stats.cascades_skipped += 1
        log.info("post cascade skipped: " + message, *args)
        return False

    # ------------------------------------------------------------------
    # Post actions attached to suspend / silence
    # ------------------------------------------------------------------

    async def perform_post_action(
        self,
        actor: Account,
        post_id: Optional[int],
        action: Optional[str],
        edit_raw: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Delete or edit the post that triggered a moderation action.

        Returns True when the post was changed.
        """
        if post_id is None or not action:
            return False
        if action not in POST_ACTIONS:
            return self._skip("unknown action %r for post %s", action, post_id)
        now = now or utcnow()

        try:
            async with transaction(self._path) as db:
                post = await self.posts.get(db, int(post_id))
                check = "edit_post" if action == POST_ACTION_EDIT else "delete_post"
                decision = self.guard.authorize(actor, post, check)
                if not decision:
                    return self._skip("%s on post %s denied: %s", action, post_id, decision.reason)

                if action == POST_ACTION_EDIT:
                    if edit_raw is None:
                        return self._skip("edit of post %s without new text", post_id)
                    await self.posts.revise(db, post.id, edit_raw, now)
                    await self.audit.record(
                        db,
                        actor_id=actor.id,
                        target_id=post.author_id,
                        kind="edit_post",
                        details={"old_raw": post.raw, "new_raw": edit_raw},
                        now=now,
                        post_id=post.id,
                    )
                    return True

                targets = [post]
                if action == POST_ACTION_DELETE_REPLIES:
                    targets.extend(await self.posts.live_replies_to(db, post.id))
                for target in targets:
                    if await self.posts.soft_delete(db, target.id, actor.id, now):
                        await self.audit.record(
                            db,
                            actor_id=actor.id,
                            target_id=target.author_id,
                            kind="delete_post",
                            details={"reply_to_post_id": target.reply_to_post_id},
                            now=now,
                            post_id=target.id,
                        )
                return True
        except Exception:
            log.exception("Post cascade %s on post %s failed", action, post_id)
            return self._skip("%s on post %s raised", action, post_id)

    # ------------------------------------------------------------------
    # Account cascades
    # ------------------------------------------------------------------

    async def delete_posts_batch(
        self,
        db: aiosqlite.Connection,
        actor_id: int,
        account: Account,
        batch_size: int,
        now: datetime,
    ) -> int:
        deleted = 0
        for post in await self.posts.live_by_author(db, account.id, batch_size):
            if await self.posts.soft_delete(db, post.id, actor_id, now):
                await self.audit.record(
                    db,
                    actor_id=actor_id,
                    target_id=account.id,
                    kind="delete_post",
                    details={"batch": True},
                    now=now,
                    post_id=post.id,
                )
                deleted += 1
        return deleted

    async def destroy_account(
        self,
        db: aiosqlite.Connection,
        actor_id: int,
        account: Account,
        options: DestroyOptions,
        now: datetime,
    ) -> dict[str, Any]:
        """Remove the account and everything hanging off it, blocking identifiers as asked."""
        domains: set[str] = set()
        if options.block_urls:
            domains = url_domains(await self.posts.raw_by_author(db, account.id))

        posts_deleted = await self.posts.count_live_by_author(db, account.id)
        await self.posts.delete_by_author(db, account.id)

        blocked: list[str] = []
        if options.block_email and await self.screening.block(db, "email", account.email, actor_id, now):
            blocked.append(f"email:{account.email.lower()}")
        if options.block_ip:
            for ip in {account.ip_address, account.registration_ip} - {None}:
                if await self.screening.block(db, "ip", ip, actor_id, now):
                    blocked.append(f"ip:{ip}")
        for domain in sorted(domains):
            if await self.screening.block(db, "domain", domain, actor_id, now):
                blocked.append(f"domain:{domain}")

        purged = await self.accounts.purge_related(db, account.id)
        await self.groups.remove_all_memberships(db, account.id)
        await self.reviews.delete_for_account(db, account.id)
        await self.confirmations.delete_for_account(db, account.id)
        await self.penalties.delete_for_account(db, account.id)
        await self.accounts.delete(db, account.id)

        details = {
            "username": account.username,
            "email": account.email,
            "ip_address": account.ip_address,
            "context": options.context,
            "delete_as_spammer": options.delete_as_spammer,
            "posts_deleted": posts_deleted,
            "blocked": blocked,
        }
        await self.audit.record(
            db,
            actor_id=actor_id,
            target_id=account.id,
            kind="delete_user",
            details=details,
            now=now,
            context=options.context,
        )
        log.info(
            "Destroyed account %s (%s) by %s: %d posts, %d related rows, blocked=%s",
            account.id,
            account.username,
            actor_id,
            posts_deleted,
            sum(purged.values()),
            blocked,
        )
        return details

    async def merge_accounts(
        self,
        db: aiosqlite.Connection,
        actor_id: int,
        source: Account,
        target: Account,
        now: datetime,
    ) -> dict[str, Any]:
        """Move the source's content to the target, then destroy the source."""
        posts_moved = await self.posts.reassign_author(db, source.id, target.id)
        memberships = await self.groups.transfer_memberships(db, source.id, target.id)
        await self.accounts.update(db, source.id, merged_into_id=target.id)

        details = {
            "source_id": source.id,
            "source_username": source.username,
            "target_username": target.username,
            "posts_reassigned": posts_moved,
            "memberships_transferred": memberships,
        }
        await self.audit.record(
            db,
            actor_id=actor_id,
            target_id=target.id,
            kind="merge_user",
            details=details,
            now=now,
        )

        merged = await self.accounts.get(db, source.id)
        await self.destroy_account(
            db,
            actor_id,
            merged or source,
            DestroyOptions(delete_posts=True, context=f"merged into {target.username}"),
            now,
        )
        return details
