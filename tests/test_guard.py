from __future__ import annotations

from datetime import datetime, timezone

import pytest

from custodian.errors import InvalidAccess, Unauthorized
from custodian.guard import AuthorizationGuard, PermissionTier, tier_of
from custodian.models import Account, Post

_T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _account(account_id: int, **fields) -> Account:
    fields.setdefault("active", True)
    return Account(id=account_id, username=f"user{account_id}", email=f"u{account_id}@example.com", created_at=_T0, **fields)


ADMIN = _account(1, admin=True)
OTHER_ADMIN = _account(2, admin=True)
MOD = _account(3, moderator=True)
USER = _account(4)
OTHER_USER = _account(5)


@pytest.fixture
def guard() -> AuthorizationGuard:
    return AuthorizationGuard()


def test_tiers_order_regular_moderator_admin() -> None:
    assert tier_of(USER) is PermissionTier.REGULAR
    assert tier_of(MOD) is PermissionTier.MODERATOR
    assert tier_of(ADMIN) is PermissionTier.ADMIN
    assert tier_of(None) is PermissionTier.REGULAR


def test_penalties_need_staff_actor_and_non_staff_target(guard: AuthorizationGuard) -> None:
    assert guard.authorize(MOD, USER, "suspend")
    assert guard.authorize(ADMIN, USER, "silence")

    denied = guard.authorize(USER, OTHER_USER, "suspend")
    assert not denied
    assert "staff" in denied.reason.lower()

    assert not guard.authorize(ADMIN, MOD, "suspend")
    assert not guard.authorize(MOD, MOD, "silence")


def test_admin_role_rules(guard: AuthorizationGuard) -> None:
    assert guard.authorize(ADMIN, OTHER_ADMIN, "revoke_admin")
    assert not guard.authorize(ADMIN, ADMIN, "revoke_admin")
    assert not guard.authorize(ADMIN, USER, "revoke_admin")
    assert not guard.authorize(MOD, OTHER_ADMIN, "revoke_admin")

    assert guard.authorize(ADMIN, USER, "grant_admin")
    assert not guard.authorize(ADMIN, OTHER_ADMIN, "grant_admin")
    assert not guard.authorize(ADMIN, _account(9, active=False), "grant_admin")


def test_moderation_grant_refuses_admin_equivalents(guard: AuthorizationGuard) -> None:
    assert guard.authorize(ADMIN, USER, "grant_moderation")
    assert not guard.authorize(ADMIN, OTHER_ADMIN, "grant_moderation")
    assert not guard.authorize(ADMIN, MOD, "grant_moderation")
    assert guard.authorize(ADMIN, MOD, "revoke_moderation")
    assert not guard.authorize(ADMIN, USER, "revoke_moderation")


def test_trust_level_needs_actor_to_outrank_or_equal(guard: AuthorizationGuard) -> None:
    assert guard.authorize(MOD, USER, "trust_level")
    assert guard.authorize(ADMIN, MOD, "trust_level")
    assert not guard.authorize(MOD, ADMIN, "trust_level")
    assert not guard.authorize(USER, OTHER_USER, "trust_level_lock")


def test_merge_rules_depend_on_the_pair(guard: AuthorizationGuard) -> None:
    assert guard.authorize(ADMIN, USER, "merge", {"target": OTHER_USER})
    assert not guard.authorize(ADMIN, USER, "merge", {"target": USER})
    assert not guard.authorize(ADMIN, OTHER_ADMIN, "merge", {"target": USER})
    assert not guard.authorize(ADMIN, USER, "merge", {})

    into_staff = guard.authorize(ADMIN, USER, "merge", {"target": MOD})
    assert not into_staff
    assert "confirmation" in into_staff.reason
    assert guard.authorize(ADMIN, USER, "merge", {"target": MOD, "confirm_privileged_target": True})


def test_destroy_rules(guard: AuthorizationGuard) -> None:
    assert guard.authorize(MOD, USER, "destroy")
    assert not guard.authorize(MOD, MOD, "destroy")
    assert not guard.authorize(ADMIN, OTHER_ADMIN, "destroy")
    assert not guard.authorize(MOD, _account(8, moderator=True), "destroy")
    assert guard.authorize(ADMIN, MOD, "destroy")


def test_post_sub_checks(guard: AuthorizationGuard) -> None:
    live = Post(id=1, author_id=USER.id, raw="hello", created_at=_T0)
    gone = Post(id=2, author_id=USER.id, raw="bye", created_at=_T0, deleted_at=_T0)

    assert guard.authorize(MOD, live, "delete_post")
    assert not guard.authorize(MOD, gone, "delete_post")
    assert not guard.authorize(MOD, None, "delete_post")
    assert not guard.authorize(USER, live, "edit_post")
    assert guard.authorize(MOD, gone, "edit_post")


def test_unknown_action_and_missing_actor_are_denied(guard: AuthorizationGuard) -> None:
    assert not guard.authorize(ADMIN, USER, "launch_missiles")
    assert not guard.authorize(None, USER, "suspend")


def test_ensure_raises_requested_error_type(guard: AuthorizationGuard) -> None:
    guard.ensure(ADMIN, USER, "approve")

    with pytest.raises(Unauthorized):
        guard.ensure(USER, OTHER_USER, "approve")

    with pytest.raises(InvalidAccess) as excinfo:
        guard.ensure(MOD, ADMIN, "trust_level", error=InvalidAccess)
    assert excinfo.value.status == 403
