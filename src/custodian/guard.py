"""Authorization predicates for moderation commands.

The guard is pure: it looks only at the actor and target snapshots it is
handed and never touches storage. ``authorize`` answers allow/deny with a
reason; ``ensure`` raises on denial.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from .errors import Unauthorized
from .models import Account, Post

log = logging.getLogger("custodian.guard")


class PermissionTier(IntEnum):
    """Permission tiers for command access control."""
    REGULAR = 0
    MODERATOR = 3
    ADMIN = 4


def tier_of(account: Optional[Account]) -> PermissionTier:
    if account is None:
        return PermissionTier.REGULAR
    if account.admin:
        return PermissionTier.ADMIN
    if account.moderator:
        return PermissionTier.MODERATOR
    return PermissionTier.REGULAR


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


Rule = Callable[[Account, Any, Mapping[str, Any]], Decision]


def _staff_only(actor: Account) -> Optional[Decision]:
    if not actor.staff:
        return deny("Only staff can perform this action.")
    return None


def _admin_only(actor: Account) -> Optional[Decision]:
    if not actor.admin:
        return deny("Only admins can perform this action.")
    return None


def _not_self(actor: Account, target: Account, what: str) -> Optional[Decision]:
    if target is not None and actor.id == target.id:
        return deny(f"You cannot {what} yourself.")
    return None


def _outranks_or_equals(actor: Account, target: Account) -> Optional[Decision]:
    if target is not None and tier_of(actor) < tier_of(target):
        return deny("You cannot act on a user with a higher role than your own.")
    return None


def _first_denial(*checks: Optional[Decision]) -> Decision:
    for check in checks:
        if check is not None:
            return check
    return ALLOW


class AuthorizationGuard:
    def __init__(self) -> None:
        self._rules: dict[str, Rule] = {
            "suspend": self._can_penalize,
            "unsuspend": self._can_penalize,
            "silence": self._can_penalize,
            "unsilence": self._can_penalize,
            "revoke_admin": self._can_revoke_admin,
            "grant_admin": self._can_grant_admin,
            "revoke_moderation": self._can_revoke_moderation,
            "grant_moderation": self._can_grant_moderation,
            "add_group": self._can_edit_groups,
            "remove_group": self._can_edit_groups,
            "primary_group": self._can_change_primary_group,
            "trust_level": self._can_change_trust_level,
            "trust_level_lock": self._can_change_trust_level,
            "disable_second_factor": self._can_disable_second_factor,
            "reset_bounce_score": self._can_reset_bounce_score,
            "anonymize": self._can_anonymize,
            "merge": self._can_merge,
            "destroy": self._can_destroy,
            "approve": self._can_approve,
            "activate": self._can_activate,
            "deactivate": self._can_deactivate,
            "log_out": self._can_log_out,
            "delete_same_ip": self._can_delete_same_ip,
            "delete_penalty_history": self._can_delete_penalty_history,
            "delete_sso_record": self._can_delete_sso_record,
            "delete_posts_batch": self._can_delete_posts_batch,
            "delete_post": self._can_delete_post,
            "edit_post": self._can_edit_post,
        }

    def authorize(
        self,
        actor: Optional[Account],
        target: Any,
        action: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Decision:
        rule = self._rules.get(action)
        if rule is None:
            return deny(f"Unknown action: {action}")
        if actor is None:
            return deny("Unknown operator.")
        decision = rule(actor, target, params or {})
        if not decision.allowed:
            log.info("guard denied %s by %s: %s", action, actor.id, decision.reason)
        return decision

    def ensure(
        self,
        actor: Optional[Account],
        target: Any,
        action: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        error: type[Unauthorized] = Unauthorized,
    ) -> None:
        decision = self.authorize(actor, target, action, params)
        if not decision.allowed:
            raise error(decision.reason)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _can_penalize(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _first_denial(_staff_only(actor), _not_self(actor, target, "suspend or silence"))
        if not denied:
            return denied
        if target.staff:
            return deny("Staff members cannot be suspended or silenced.")
        return ALLOW

    def _can_revoke_admin(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _first_denial(_admin_only(actor), _not_self(actor, target, "revoke admin from"))
        if not denied:
            return denied
        if not target.admin:
            return deny("The user is not an admin.")
        return ALLOW

    def _can_grant_admin(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _admin_only(actor)
        if denied is not None:
            return denied
        if target.admin:
            return deny("The user is already an admin.")
        if not target.active:
            return deny("Only active users can be granted admin.")
        return ALLOW

    def _can_revoke_moderation(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _admin_only(actor)
        if denied is not None:
            return denied
        if not target.moderator:
            return deny("The user is not a moderator.")
        return ALLOW

    def _can_grant_moderation(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _admin_only(actor)
        if denied is not None:
            return denied
        if target.admin:
            return deny("Admins already have moderation rights.")
        if target.moderator:
            return deny("The user is already a moderator.")
        return ALLOW

    def _can_edit_groups(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_admin_only(actor))

    def _can_change_primary_group(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_staff_only(actor))

    def _can_change_trust_level(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_staff_only(actor), _outranks_or_equals(actor, target))

    def _can_disable_second_factor(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_admin_only(actor), _not_self(actor, target, "disable second factor for"))

    def _can_reset_bounce_score(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_staff_only(actor))

    def _can_anonymize(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _admin_only(actor)
        if denied is not None:
            return denied
        if target.staff:
            return deny("Staff members cannot be anonymized.")
        if target.anonymized:
            return deny("The user is already anonymized.")
        return ALLOW

    def _can_merge(self, actor: Account, source: Account, params: Mapping[str, Any]) -> Decision:
        denied = _admin_only(actor)
        if denied is not None:
            return denied
        target: Optional[Account] = params.get("target")
        if target is None:
            return deny("A merge target is required.")
        if source.id == target.id:
            return deny("You cannot merge a user into themselves.")
        if source.admin:
            return deny("Admins cannot be merged into another user.")
        if target.merged or target.anonymized:
            return deny("The merge target is no longer an active identity.")
        if tier_of(target) > tier_of(source) and not params.get("confirm_privileged_target"):
            return deny("Merging into a staff account requires explicit confirmation.")
        return ALLOW

    def _can_destroy(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _first_denial(_staff_only(actor), _not_self(actor, target, "delete"))
        if not denied:
            return denied
        if target.admin:
            return deny("Admins cannot be deleted.")
        if target.staff and not actor.admin:
            return deny("Only admins can delete staff members.")
        return ALLOW

    def _can_approve(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _staff_only(actor)
        if denied is not None:
            return denied
        if target.approved:
            return deny("The user is already approved.")
        return ALLOW

    def _can_activate(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_staff_only(actor), _outranks_or_equals(actor, target))

    def _can_deactivate(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(
            _staff_only(actor),
            _not_self(actor, target, "deactivate"),
            _outranks_or_equals(actor, target),
        )

    def _can_log_out(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_staff_only(actor), _outranks_or_equals(actor, target))

    def _can_delete_same_ip(self, actor: Account, target: Any, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_staff_only(actor))

    def _can_delete_penalty_history(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_admin_only(actor))

    def _can_delete_sso_record(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        return _first_denial(_admin_only(actor))

    def _can_delete_posts_batch(self, actor: Account, target: Account, params: Mapping[str, Any]) -> Decision:
        denied = _staff_only(actor)
        if denied is not None:
            return denied
        if target.admin:
            return deny("Posts of admins cannot be bulk deleted.")
        return ALLOW

    def _can_delete_post(self, actor: Account, post: Optional[Post], params: Mapping[str, Any]) -> Decision:
        denied = _staff_only(actor)
        if denied is not None:
            return denied
        if post is None:
            return deny("The post does not exist.")
        if post.deleted:
            return deny("The post is already deleted.")
        return ALLOW

    def _can_edit_post(self, actor: Account, post: Optional[Post], params: Mapping[str, Any]) -> Decision:
        denied = _staff_only(actor)
        if denied is not None:
            return denied
        if post is None:
            return deny("The post does not exist.")
        return ALLOW
