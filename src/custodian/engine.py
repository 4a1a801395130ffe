"""Moderation state transitions.

Every public operation follows the same explicit sequence:

1. load the actor and target inside a ``BEGIN IMMEDIATE`` transaction,
2. consult the guard, then domain preconditions, then parameter validation,
3. write the mutation and its audit record on the same connection,
4. after commit: events, notifications, then cascades.

Anything raised in steps 1-3 rolls the transaction back, so a failed command
leaves no trace. Step 4 is best-effort and never undoes step 3.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

import aiosqlite

from .cascade import CascadeExecutor
from .config import Settings
from .constants import (
    ACTIVATED_BY_STAFF,
    DEACTIVATED_BY_STAFF,
    ERROR_MESSAGES,
    MAX_TRUST_LEVEL,
    MIN_TRUST_LEVEL,
    NOTIFY_ACCOUNT_SILENCED,
    NOTIFY_ACCOUNT_SUSPENDED,
    NOTIFY_ADMIN_CONFIRMATION,
    NOTIFY_SECOND_FACTOR_DISABLED,
    NOTIFY_TASK_FAILED,
    SAME_IP_DESTROY_REASON,
    SAME_IP_ORDERS,
)
from .database import connect, transaction
from .errors import (
    Conflict,
    CustodianError,
    InvalidAccess,
    InvalidParameters,
    NotFound,
    PostsExist,
    Unauthorized,
    ValidationError,
)
from .events import EventPublisher
from .guard import AuthorizationGuard
from .models import (
    Accepted,
    Account,
    AnonymizeResult,
    BulkApproveResult,
    DestroyOptions,
    DestroyResult,
    PenaltyKind,
    SilenceResult,
    SuspensionResult,
)
from .notifications import DELIVER_TASK, NotificationDispatcher
from .promotion import Promotion, validate_promotion
from .services.account_store import AccountStore
from .services.audit_log import AuditLogger
from .services.confirmation_store import AdminConfirmationStore
from .services.group_store import GroupStore
from .services.penalty_store import PenaltyStore
from .services.post_store import PostStore
from .services.review_store import ReviewStore
from .services.stats import RuntimeStats
from .tasks import Task, TaskQueue
from .utils import as_utc, from_iso, hours_from, time_ago_in_words, to_iso, utcnow

log = logging.getLogger("custodian.engine")

TASK_DESTROY = "destroy_account"
TASK_MERGE = "merge_account"
TASK_SAME_IP = "destroy_same_ip"


def _full_reason(reason: str, message: Optional[str]) -> str:
    return f"{reason}\n\n{message}" if message else reason


def _require_reason(reason: Any) -> str:
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("A reason is required.", field="reason")
    return reason.strip()


def _parse_post_id(post_id: Any) -> Optional[int]:
    if post_id is None or post_id == "":
        return None
    if isinstance(post_id, bool):
        raise ValidationError("post_id must be an integer.", field="post_id")
    if isinstance(post_id, str) and post_id.strip().isdigit():
        return int(post_id.strip())
    if not isinstance(post_id, int):
        raise ValidationError("post_id must be an integer.", field="post_id")
    return post_id


def _parse_datetime(value: Any, field: str, *, required: bool) -> Optional[datetime]:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required.", field=field)
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            return from_iso(value)
        except ValueError as e:
            raise ValidationError(f"{field} is not a valid timestamp.", field=field) from e
    raise ValidationError(f"{field} is not a valid timestamp.", field=field)


def _parse_trust_level(level: Any) -> int:
    if isinstance(level, bool):
        raise ValidationError(ERROR_MESSAGES["invalid_trust_level"], field="level")
    if isinstance(level, str) and level.strip().isdigit():
        level = int(level.strip())
    if not isinstance(level, int) or not MIN_TRUST_LEVEL <= level <= MAX_TRUST_LEVEL:
        raise ValidationError(ERROR_MESSAGES["invalid_trust_level"], field="level")
    return level


def _parse_bool(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationError(ERROR_MESSAGES["invalid_boolean"], field=field)


class StateTransitionEngine:
    def __init__(
        self,
        settings: Settings,
        *,
        guard: AuthorizationGuard,
        accounts: AccountStore,
        groups: GroupStore,
        posts: PostStore,
        penalties: PenaltyStore,
        reviews: ReviewStore,
        confirmations: AdminConfirmationStore,
        audit: AuditLogger,
        cascade: CascadeExecutor,
        notifications: NotificationDispatcher,
        events: EventPublisher,
        queue: TaskQueue,
        promotion: Promotion,
        stats: Optional[RuntimeStats] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self._path = settings.sqlite_path
        self.guard = guard
        self.accounts = accounts
        self.groups = groups
        self.posts = posts
        self.penalties = penalties
        self.reviews = reviews
        self.confirmations = confirmations
        self.audit = audit
        self.cascade = cascade
        self.notifications = notifications
        self.events = events
        self.queue = queue
        self.promotion = validate_promotion(promotion)
        self.stats = stats or RuntimeStats()
        self._clock = clock

        queue.register(TASK_DESTROY, self._run_destroy)
        queue.register(TASK_MERGE, self._run_merge)
        queue.register(TASK_SAME_IP, self._run_same_ip)
        queue.on_failure(self._on_task_failed)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    # ------------------------------------------------------------------
    # Loading helpers
    # ------------------------------------------------------------------

    async def _require_account(self, db: aiosqlite.Connection, account_id: Any) -> Account:
        account = await self.accounts.get(db, int(account_id)) if account_id is not None else None
        if account is None:
            raise NotFound(ERROR_MESSAGES["account_not_found"])
        return account

    async def _guarded(
        self,
        db: aiosqlite.Connection,
        actor_id: int,
        account_id: Any,
        action: str,
        params: Optional[dict[str, Any]] = None,
        *,
        error: type[Unauthorized] = Unauthorized,
    ) -> tuple[Account, Account]:
        """Load target then actor and run the guard. NotFound wins over a denial."""
        target = await self._require_account(db, account_id)
        actor = await self.accounts.get(db, int(actor_id))
        self.guard.ensure(actor, target, action, params, error=error)
        assert actor is not None
        return actor, target

    async def _already_message(self, db: aiosqlite.Connection, account: Account, kind: PenaltyKind, now: datetime) -> str:
        record = await self.penalties.active(db, account.id, kind)
        if kind == "suspension":
            key, since = "already_suspended", account.suspended_at
        else:
            key, since = "already_silenced", account.silenced_at
        staff = "system"
        if record is not None:
            since = record.created_at
            operator = await self.accounts.get(db, record.acting_operator_id)
            if operator is not None:
                staff = operator.username
        return ERROR_MESSAGES[key].format(staff=staff, time_ago=time_ago_in_words(since or now, now))

    async def _open_penalty(
        self,
        db: aiosqlite.Connection,
        account: Account,
        kind: PenaltyKind,
        *,
        actor_id: int,
        reason: str,
        message: Optional[str],
        now: datetime,
        expires_at: Optional[datetime],
    ) -> None:
        try:
            await self.penalties.open(
                db,
                kind=kind,
                account_id=account.id,
                actor_id=actor_id,
                reason=reason,
                message=message,
                created_at=now,
                expires_at=expires_at,
            )
        except aiosqlite.IntegrityError as e:
            raise Conflict(await self._already_message(db, account, kind, now)) from e

    # ------------------------------------------------------------------
    # Suspension and silencing
    # ------------------------------------------------------------------

    async def suspend(
        self,
        actor_id: int,
        account_id: int,
        *,
        until: Any,
        reason: Any,
        message: Optional[str] = None,
        post_id: Optional[int] = None,
        post_action: Optional[str] = None,
        post_edit: Optional[str] = None,
    ) -> SuspensionResult:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "suspend")
            await self.penalties.retire_expired(db, user.id, "suspension", now)
            if user.is_suspended(now):
                raise Conflict(await self._already_message(db, user, "suspension", now))

            until = _parse_datetime(until, "suspend_until", required=True)
            reason = _require_reason(reason)
            post_id = _parse_post_id(post_id)
            full_reason = _full_reason(reason, message)

            await self._open_penalty(
                db, user, "suspension", actor_id=actor.id, reason=reason, message=message, now=now, expires_at=until
            )
            await self.accounts.update(db, user.id, suspended_at=now, suspended_till=until)
            await self.accounts.destroy_auth_tokens(db, user.id)
            record = await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="suspend_user",
                details={"reason": reason, "message": message, "full_reason": full_reason, "suspended_till": to_iso(until)},
                now=now,
                post_id=post_id,
            )

        log.info("Account %s suspended by %s until %s", user.id, actor.id, to_iso(until))
        await self.events.publish("user_logged_out", account_id=user.id)
        if message:
            await self.notifications.enqueue(
                NOTIFY_ACCOUNT_SUSPENDED,
                user.id,
                {"audit_id": record.id, "reason": reason, "message": message, "suspended_till": to_iso(until)},
            )
        await self.events.publish(
            "user_suspended",
            account_id=user.id,
            actor_id=actor.id,
            reason=reason,
            message=message,
            audit_id=record.id,
            post_id=post_id,
            suspended_till=to_iso(until),
            suspended_at=to_iso(now),
        )
        await self.cascade.perform_post_action(actor, post_id, post_action, post_edit, now)
        return SuspensionResult(reason=reason, full_reason=full_reason, suspended_till=until, suspended_at=now)

    async def unsuspend(self, actor_id: int, account_id: int) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "unsuspend")
            await self.accounts.update(db, user.id, suspended_at=None, suspended_till=None)
            retired = await self.penalties.close(db, user.id, "suspension")
            await self.audit.record(
                db, actor_id=actor.id, target_id=user.id, kind="unsuspend_user", details={"retired": retired}, now=now
            )
            updated = await self._require_account(db, user.id)

        await self.events.publish("user_unsuspended", account_id=user.id, actor_id=actor.id)
        return updated

    async def silence(
        self,
        actor_id: int,
        account_id: int,
        *,
        reason: Any,
        until: Any = None,
        message: Optional[str] = None,
        post_id: Optional[int] = None,
        post_action: Optional[str] = None,
        post_edit: Optional[str] = None,
    ) -> SilenceResult:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "silence")
            await self.penalties.retire_expired(db, user.id, "silence", now)
            if user.is_silenced(now):
                raise Conflict(await self._already_message(db, user, "silence", now))

            until = _parse_datetime(until, "silenced_till", required=False)
            reason = _require_reason(reason)
            post_id = _parse_post_id(post_id)
            full_reason = _full_reason(reason, message)

            await self._open_penalty(
                db, user, "silence", actor_id=actor.id, reason=reason, message=message, now=now, expires_at=until
            )
            await self.accounts.update(db, user.id, silenced_at=now, silenced_till=until)
            record = await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="silence_user",
                details={"reason": reason, "message": message, "full_reason": full_reason, "silenced_till": to_iso(until)},
                now=now,
                post_id=post_id,
            )

        log.info("Account %s silenced by %s until %s", user.id, actor.id, to_iso(until) or "further notice")
        await self.notifications.enqueue(
            NOTIFY_ACCOUNT_SILENCED,
            user.id,
            {"audit_id": record.id, "reason": reason, "message": message, "silenced_till": to_iso(until)},
        )
        await self.events.publish(
            "user_silenced",
            account_id=user.id,
            actor_id=actor.id,
            reason=reason,
            message=message,
            audit_id=record.id,
            post_id=post_id,
            silenced_till=to_iso(until),
            silenced_at=to_iso(now),
        )
        await self.cascade.perform_post_action(actor, post_id, post_action, post_edit, now)
        return SilenceResult(
            silenced=True,
            reason=reason,
            full_reason=full_reason,
            silenced_till=until,
            silenced_at=now,
            silenced_by_id=actor.id,
        )

    async def unsilence(self, actor_id: int, account_id: int) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "unsilence")
            await self.accounts.update(db, user.id, silenced_at=None, silenced_till=None)
            retired = await self.penalties.close(db, user.id, "silence")
            await self.audit.record(
                db, actor_id=actor.id, target_id=user.id, kind="unsilence_user", details={"retired": retired}, now=now
            )
            updated = await self._require_account(db, user.id)

        await self.events.publish("user_unsilenced", account_id=user.id, actor_id=actor.id)
        return updated

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def _set_role(self, actor_id: int, account_id: int, action: str, audit_kind: str, **fields: bool) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, action)
            await self.accounts.update(db, user.id, **fields)
            await self.audit.record(db, actor_id=actor.id, target_id=user.id, kind=audit_kind, details=dict(fields), now=now)
            updated = await self._require_account(db, user.id)

        await self.events.publish("user_role_changed", account_id=user.id, actor_id=actor.id, **fields)
        return updated

    async def revoke_admin(self, actor_id: int, account_id: int) -> Account:
        return await self._set_role(actor_id, account_id, "revoke_admin", "revoke_admin", admin=False)

    async def revoke_moderation(self, actor_id: int, account_id: int) -> Account:
        return await self._set_role(actor_id, account_id, "revoke_moderation", "revoke_moderation", moderator=False)

    async def grant_moderation(self, actor_id: int, account_id: int) -> Account:
        return await self._set_role(actor_id, account_id, "grant_moderation", "grant_moderation", moderator=True)

    async def grant_admin(self, actor_id: int, account_id: int) -> Accepted:
        """Request an admin grant. The bit is set only by ``confirm_admin``."""
        now = self._now()
        expires_at = hours_from(now, self.settings.admin_confirmation_ttl_hours)
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "grant_admin")
            confirmation = await self.confirmations.create(db, user.id, actor.id, now, expires_at)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="grant_admin_requested",
                details={"expires_at": to_iso(expires_at)},
                now=now,
            )

        await self.notifications.enqueue(
            NOTIFY_ADMIN_CONFIRMATION,
            actor.id,
            {
                "token": confirmation.token,
                "account_id": user.id,
                "username": user.username,
                "expires_at": to_iso(expires_at),
            },
        )
        return Accepted()

    async def confirm_admin(self, actor_id: int, token: str) -> Account:
        now = self._now()
        expired = False
        async with transaction(self._path) as db:
            confirmation = await self.confirmations.get(db, token)
            if confirmation is None:
                raise NotFound("Admin confirmation not found.")
            if confirmation.expired(now):
                await self.confirmations.delete(db, token)
                expired = True
            else:
                if confirmation.requested_by_id != int(actor_id):
                    raise InvalidAccess("Only the operator who requested the grant can confirm it.")
                actor, user = await self._guarded(db, actor_id, confirmation.account_id, "grant_admin", error=InvalidAccess)
                await self.accounts.update(db, user.id, admin=True)
                await self.confirmations.delete(db, token)
                await self.audit.record(
                    db, actor_id=actor.id, target_id=user.id, kind="grant_admin", details={"admin": True}, now=now
                )
                updated = await self._require_account(db, user.id)

        if expired:
            log.info("Discarded expired admin confirmation for account %s", confirmation.account_id)
            raise InvalidAccess(ERROR_MESSAGES["confirmation_expired"])

        await self.events.publish("user_role_changed", account_id=user.id, actor_id=actor.id, admin=True)
        return updated

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def _editable_group(self, db: aiosqlite.Connection, group_id: Any):
        group = await self.groups.get(db, int(group_id)) if group_id is not None else None
        if group is None:
            raise NotFound("Group not found.")
        if group.automatic:
            raise InvalidParameters(ERROR_MESSAGES["automatic_group"])
        return group

    async def add_group(self, actor_id: int, account_id: int, group_id: int) -> bool:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "add_group")
            group = await self._editable_group(db, group_id)
            added = await self.groups.add_member(db, group.id, user.id)
            if added:
                await self.audit.record(
                    db,
                    actor_id=actor.id,
                    target_id=user.id,
                    kind="add_to_group",
                    details={"group_id": group.id, "group_name": group.name},
                    now=now,
                )

        if added:
            await self.events.publish("user_groups_changed", account_id=user.id, group_id=group.id, added=True)
        return added

    async def remove_group(self, actor_id: int, account_id: int, group_id: int) -> bool:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "remove_group")
            group = await self._editable_group(db, group_id)
            removed = await self.groups.remove_member(db, group.id, user.id)
            if removed:
                if user.primary_group_id == group.id:
                    await self.accounts.update(db, user.id, primary_group_id=None)
                await self.audit.record(
                    db,
                    actor_id=actor.id,
                    target_id=user.id,
                    kind="remove_from_group",
                    details={"group_id": group.id, "group_name": group.name},
                    now=now,
                )

        if removed:
            await self.events.publish("user_groups_changed", account_id=user.id, group_id=group.id, added=False)
        return removed

    async def set_primary_group(self, actor_id: int, account_id: int, group_id: Optional[int]) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "primary_group")
            if group_id is not None:
                group = await self.groups.get(db, int(group_id))
                if group is None:
                    raise NotFound("Group not found.")
                if not await self.groups.is_member(db, group.id, user.id):
                    raise ValidationError(ERROR_MESSAGES["not_group_member"], field="primary_group_id")
                group_id = group.id
            await self.accounts.update(db, user.id, primary_group_id=group_id)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="change_primary_group",
                details={"previous_value": user.primary_group_id, "new_value": group_id},
                now=now,
            )
            return await self._require_account(db, user.id)

    # ------------------------------------------------------------------
    # Trust levels
    # ------------------------------------------------------------------

    async def _should_auto_lock(self, account: Account, level: int) -> bool:
        if level in (0, 1, 2):
            return await self.promotion.met_criteria(account, level + 1)
        if level == 3:
            return await self.promotion.tl3_lost(account)
        return False

    async def set_trust_level(self, actor_id: int, account_id: int, level: Any) -> Account:
        async with connect(self._path) as db:
            _, user = await self._guarded(db, actor_id, account_id, "trust_level", error=InvalidAccess)
        level = _parse_trust_level(level)

        # Committed on its own so it stands even if the level write below fails.
        if user.manual_locked_trust_level is None and await self._should_auto_lock(user, level):
            async with transaction(self._path) as db:
                if await self.accounts.lock_trust_level_if_unlocked(db, user.id, level):
                    log.info("Auto-locked account %s at trust level %s", user.id, level)

        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "trust_level", error=InvalidAccess)
            previous = user.trust_level
            await self.accounts.update(db, user.id, trust_level=level)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="change_trust_level",
                details={"previous_value": previous, "new_value": level},
                now=now,
            )
            updated = await self._require_account(db, user.id)

        await self.events.publish(
            "user_trust_level_changed", account_id=user.id, actor_id=actor.id, previous=previous, level=level
        )
        return updated

    async def lock_trust_level(self, actor_id: int, account_id: int, locked: Any) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "trust_level_lock", error=InvalidAccess)
            locked = _parse_bool(locked, "locked")
            pinned = user.trust_level if locked else None
            await self.accounts.update(db, user.id, manual_locked_trust_level=pinned)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="lock_trust_level",
                details={"locked": locked, "trust_level": pinned},
                now=now,
            )
            updated = await self._require_account(db, user.id)

        try:
            await self.promotion.recalculate(updated, actor)
        except Exception:
            log.exception("Trust level recalculation failed for account %s", updated.id)
        return updated

    # ------------------------------------------------------------------
    # Credentials and deliverability
    # ------------------------------------------------------------------

    async def disable_second_factor(self, actor_id: int, account_id: int) -> None:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "disable_second_factor")
            factors = await self.accounts.count_second_factors(db, user.id)
            keys = await self.accounts.count_security_keys(db, user.id)
            if factors == 0 and keys == 0:
                raise InvalidParameters(ERROR_MESSAGES["nothing_to_disable"])
            await self.accounts.destroy_second_factors(db, user.id)
            await self.accounts.destroy_security_keys(db, user.id)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="disable_second_factor_auth",
                details={"second_factors": factors, "security_keys": keys},
                now=now,
            )

        await self.notifications.enqueue(NOTIFY_SECOND_FACTOR_DISABLED, user.id, {"disabled_by": actor.username})

    async def reset_bounce_score(self, actor_id: int, account_id: int) -> bool:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "reset_bounce_score")
            previous = await self.accounts.bounce_score(db, user.id)
            if previous is None:
                return False
            await self.accounts.reset_bounce_score(db, user.id)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="reset_bounce_score",
                details={"previous_value": previous},
                now=now,
            )
        return True

    async def delete_sso_record(self, actor_id: int, account_id: int) -> None:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "delete_sso_record")
            if not await self.accounts.delete_sso_record(db, user.id):
                raise NotFound("The user has no single sign-on record.")
            await self.audit.record(db, actor_id=actor.id, target_id=user.id, kind="delete_sso_record", details={}, now=now)

    # ------------------------------------------------------------------
    # Anonymize, merge, destroy
    # ------------------------------------------------------------------

    async def _anonymous_username(self, db: aiosqlite.Connection) -> str:
        while True:
            candidate = f"anon{secrets.token_hex(4)}"
            if await self.accounts.find_by_username(db, candidate) is None:
                return candidate

    async def anonymize(self, actor_id: int, account_id: int, anonymize_ip: Optional[str] = None) -> AnonymizeResult:
        now = self._now()
        snapshot: Optional[Account] = None
        try:
            async with transaction(self._path) as db:
                snapshot = await self._require_account(db, account_id)
                actor, user = await self._guarded(db, actor_id, account_id, "anonymize")
                username = await self._anonymous_username(db)
                fields: dict[str, Any] = {
                    "username": username,
                    "email": f"{username}@anonymized.invalid",
                    "name": None,
                    "bio": None,
                    "website": None,
                    "anonymized": True,
                }
                if anonymize_ip:
                    fields["ip_address"] = anonymize_ip
                    fields["registration_ip"] = anonymize_ip
                await self.accounts.update(db, user.id, **fields)
                await self.accounts.destroy_auth_tokens(db, user.id)
                await self.accounts.delete_email_tokens(db, user.id)
                await self.accounts.delete_sso_record(db, user.id)
                await self.accounts.destroy_second_factors(db, user.id)
                await self.accounts.destroy_security_keys(db, user.id)
                await self.audit.record(
                    db,
                    actor_id=actor.id,
                    target_id=user.id,
                    kind="anonymize_user",
                    details={"username": username, "anonymize_ip": bool(anonymize_ip)},
                    now=now,
                )
        except aiosqlite.Error:
            if snapshot is None:
                raise
            log.exception("Anonymizing account %s failed", snapshot.id)
            return AnonymizeResult(success=False, account=snapshot)

        await self.events.publish("user_anonymized", account_id=user.id, actor_id=actor.id, username=username)
        return AnonymizeResult(success=True, username=username)

    async def merge(
        self,
        actor_id: int,
        account_id: int,
        target_username: str,
        *,
        confirm_privileged_target: bool = False,
    ) -> Accepted:
        async with connect(self._path) as db:
            source = await self._require_account(db, account_id)
            target = await self.accounts.find_by_username(db, target_username or "")
            if target is None:
                raise NotFound(f"User {target_username} not found.")
            actor = await self.accounts.get(db, int(actor_id))
            self.guard.ensure(
                actor,
                source,
                "merge",
                {"target": target, "confirm_privileged_target": confirm_privileged_target},
            )

        task = Task(
            kind=TASK_MERGE,
            account_id=source.id,
            actor_id=int(actor_id),
            options={"target_id": target.id, "target_username": target.username},
        )
        await self.queue.submit(task)
        log.info("Scheduled merge of account %s into %s (task %s)", source.id, target.id, task.key)
        return Accepted(task_key=task.key)

    async def destroy(
        self,
        actor_id: int,
        account_id: int,
        *,
        block_email: bool = False,
        block_urls: bool = False,
        block_ip: bool = False,
        delete_as_spammer: bool = False,
        context: Optional[str] = None,
        delete_posts: bool = False,
    ) -> DestroyResult:
        options = DestroyOptions(
            block_email=block_email,
            block_urls=block_urls,
            block_ip=block_ip,
            delete_as_spammer=delete_as_spammer,
            delete_posts=delete_posts,
            context=context,
        )
        now = self._now()
        snapshot: Optional[Account] = None
        deferred = False
        try:
            async with transaction(self._path) as db:
                actor, snapshot = await self._guarded(db, actor_id, account_id, "destroy")
                count = await self.posts.count_live_by_author(db, snapshot.id)
                if count and not delete_posts:
                    raise PostsExist(snapshot.username, count)
                if count > self.settings.destroy_inline_post_limit:
                    deferred = True
                else:
                    await self.cascade.destroy_account(db, actor.id, snapshot, options, now)
        except aiosqlite.Error:
            if snapshot is None:
                raise
            log.exception("Destroying account %s failed", snapshot.id)
            return DestroyResult(deleted=False, account=snapshot)

        if deferred:
            task = Task(kind=TASK_DESTROY, account_id=snapshot.id, actor_id=actor.id, options=options.to_dict())
            await self.queue.submit(task)
            log.info("Scheduled destroy of account %s with %d posts (task %s)", snapshot.id, count, task.key)
            return DestroyResult(deleted=False, scheduled=True, account=snapshot)

        await self.events.publish("user_destroyed", account_id=snapshot.id, actor_id=actor.id, context=context)
        return DestroyResult(deleted=True)

    async def delete_posts_batch(self, actor_id: int, account_id: int) -> int:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "delete_posts_batch")
            return await self.cascade.delete_posts_batch(db, actor.id, user, self.settings.post_delete_batch_size, now)

    # ------------------------------------------------------------------
    # Approval and activation
    # ------------------------------------------------------------------

    async def approve(self, actor_id: int, account_id: int) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "approve")
            reviewable = await self.reviews.find_for_account(db, user.id) or await self.reviews.create(db, user.id, now)
            await self.reviews.resolve(db, reviewable.id, "approved", actor.id, now)
            await self.accounts.update(db, user.id, approved=True, approved_by_id=actor.id, approved_at=now)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="approve_user",
                details={"reviewable_id": reviewable.id},
                now=now,
            )
            updated = await self._require_account(db, user.id)

        await self.events.publish("user_approved", account_id=user.id, actor_id=actor.id)
        return updated

    async def approve_bulk(self, actor_id: int, account_ids: Iterable[int]) -> BulkApproveResult:
        result = BulkApproveResult()
        for raw_id in account_ids:
            try:
                account_id = int(raw_id)
            except (TypeError, ValueError):
                result.failed[raw_id] = ERROR_MESSAGES["invalid_account_id"]
                continue
            try:
                await self.approve(actor_id, account_id)
            except CustodianError as e:
                result.failed[account_id] = e.message
            except aiosqlite.Error as e:
                log.exception("Approving account %s failed", account_id)
                result.failed[account_id] = str(e)
            else:
                result.approved.append(account_id)
        return result

    async def activate(self, actor_id: int, account_id: int) -> Account:
        now = self._now()
        valid_since = hours_from(now, -self.settings.email_token_valid_hours)
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "activate")
            token = await self.accounts.active_email_token(db, user.id, user.email, valid_since=valid_since)
            if token is None:
                token = await self.accounts.create_email_token(db, user.id, user.email, now)
            await self.accounts.confirm_email_token(db, token.id)
            await self.accounts.update(db, user.id, active=True)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="activate_user",
                details={"reason": ACTIVATED_BY_STAFF},
                now=now,
            )
            updated = await self._require_account(db, user.id)

        await self.events.publish("user_activated", account_id=user.id, actor_id=actor.id)
        return updated

    async def deactivate(self, actor_id: int, account_id: int, context: Optional[str] = None) -> Account:
        now = self._now()
        async with transaction(self._path) as db:
            actor, user = await self._guarded(db, actor_id, account_id, "deactivate")
            await self.accounts.update(db, user.id, active=False)
            await self.audit.record(
                db,
                actor_id=actor.id,
                target_id=user.id,
                kind="deactivate_user",
                details={"reason": DEACTIVATED_BY_STAFF},
                now=now,
                context=context,
            )
            updated = await self._require_account(db, user.id)

        await self.events.refresh_clients([user.id])
        return updated

    async def log_out(self, actor_id: int, account_id: int) -> int:
        async with transaction(self._path) as db:
            _, user = await self._guarded(db, actor_id, account_id, "log_out")
            destroyed = await self.accounts.destroy_auth_tokens(db, user.id)

        await self.events.publish("user_logged_out", account_id=user.id)
        return destroyed

    # ------------------------------------------------------------------
    # Same-IP cleanup
    # ------------------------------------------------------------------

    def _same_ip_params(self, ip: Any, order: Any = "trust_level") -> tuple[str, str]:
        if not isinstance(ip, str) or not ip.strip():
            raise ValidationError("An IP address is required.", field="ip")
        if order not in SAME_IP_ORDERS:
            raise ValidationError(f"order must be one of {sorted(SAME_IP_ORDERS)}.", field="order")
        return ip.strip(), SAME_IP_ORDERS[order]

    async def delete_other_accounts_with_same_ip(
        self,
        actor_id: int,
        ip: str,
        exclude_id: Optional[int] = None,
        order: str = "trust_level",
        limit: Optional[int] = None,
    ) -> Accepted:
        ip, order_by = self._same_ip_params(ip, order)
        cap = self.settings.same_ip_delete_cap
        limit = max(1, min(cap, int(limit) if limit else cap))

        async with connect(self._path) as db:
            actor = await self.accounts.get(db, int(actor_id))
            self.guard.ensure(actor, None, "delete_same_ip")
            account_ids = await self.accounts.ids_with_ip(db, ip, exclude_id=exclude_id, order_by=order_by, limit=limit)

        task = Task(
            kind=TASK_SAME_IP,
            account_id=None,
            actor_id=int(actor_id),
            options={"ip": ip, "account_ids": account_ids},
        )
        await self.queue.submit(task)
        log.info("Scheduled same-IP destroy of %d accounts for %s (task %s)", len(account_ids), ip, task.key)
        return Accepted(task_key=task.key)

    async def count_other_accounts_with_same_ip(self, actor_id: int, ip: str, exclude_id: Optional[int] = None) -> int:
        ip, _ = self._same_ip_params(ip)
        async with connect(self._path) as db:
            actor = await self.accounts.get(db, int(actor_id))
            self.guard.ensure(actor, None, "delete_same_ip")
            return await self.accounts.count_with_ip(db, ip, exclude_id=exclude_id)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def delete_penalty_history(self, actor_id: int, account_id: int) -> int:
        async with transaction(self._path) as db:
            _, user = await self._guarded(db, actor_id, account_id, "delete_penalty_history")
            retagged = await self.audit.retag_penalties(db, user.id)
        log.info("Re-tagged %d penalty audit records for account %s", retagged, user.id)
        return retagged

    async def penalty_counts(self, account_id: int) -> dict[str, int]:
        async with connect(self._path) as db:
            user = await self._require_account(db, account_id)
            return await self.audit.penalty_counts(db, user.id)

    # ------------------------------------------------------------------
    # Deferred task handlers
    # ------------------------------------------------------------------

    async def _run_destroy(self, task: Task) -> None:
        options = DestroyOptions.from_dict(task.options)
        now = self._now()
        async with transaction(self._path) as db:
            user = await self.accounts.get(db, int(task.account_id))
            if user is None:
                log.info("Account %s already gone, nothing to destroy", task.account_id)
                return
            await self.cascade.destroy_account(db, int(task.actor_id), user, options, now)
        await self.events.publish("user_destroyed", account_id=user.id, actor_id=task.actor_id, context=options.context)

    async def _run_merge(self, task: Task) -> None:
        now = self._now()
        async with transaction(self._path) as db:
            source = await self.accounts.get(db, int(task.account_id))
            if source is None:
                log.info("Account %s already gone, nothing to merge", task.account_id)
                return
            target = await self.accounts.get(db, int(task.options["target_id"]))
            if target is None:
                raise NotFound(f"Merge target {task.options.get('target_username')} no longer exists.")
            await self.cascade.merge_accounts(db, int(task.actor_id), source, target, now)
        await self.events.publish("user_merged", account_id=source.id, target_id=target.id, actor_id=task.actor_id)
        await self.events.publish("user_destroyed", account_id=source.id, actor_id=task.actor_id, context="merge")

    async def _run_same_ip(self, task: Task) -> None:
        ip = str(task.options["ip"])
        options = DestroyOptions(
            block_email=True,
            block_urls=True,
            block_ip=True,
            delete_as_spammer=True,
            delete_posts=True,
            context=SAME_IP_DESTROY_REASON.format(ip=ip),
        )
        failures: dict[int, str] = {}
        destroyed: list[int] = []
        for account_id in task.options.get("account_ids", []):
            now = self._now()
            try:
                async with transaction(self._path) as db:
                    user = await self.accounts.get(db, int(account_id))
                    if user is None or user.staff:
                        continue
                    await self.cascade.destroy_account(db, int(task.actor_id), user, options, now)
                destroyed.append(user.id)
            except (CustodianError, aiosqlite.Error) as e:
                log.exception("Same-IP destroy of account %s failed", account_id)
                failures[int(account_id)] = str(e)

        for account_id in destroyed:
            await self.events.publish("user_destroyed", account_id=account_id, actor_id=task.actor_id, context=options.context)
        if failures:
            raise RuntimeError(f"{len(failures)} same-IP deletions for {ip} failed: {failures}")

    async def _on_task_failed(self, task: Task, exc: BaseException) -> None:
        if task.kind == DELIVER_TASK:
            return
        now = self._now()
        async with transaction(self._path) as db:
            await self.audit.record(
                db,
                actor_id=task.actor_id,
                target_id=task.account_id,
                kind="task_failed",
                details={"task_kind": task.kind, "task_key": task.key, "error": str(exc), "options": task.options},
                now=now,
            )
        if task.actor_id is not None:
            await self.notifications.enqueue(
                NOTIFY_TASK_FAILED,
                task.actor_id,
                {"task_kind": task.kind, "task_key": task.key, "account_id": task.account_id, "error": str(exc)},
            )
