from __future__ import annotations

from typing import Final

# Trust levels
MIN_TRUST_LEVEL: Final[int] = 0
MAX_TRUST_LEVEL: Final[int] = 4

# Audit record kinds
AUDIT_KINDS = {
    "suspend_user",
    "unsuspend_user",
    "silence_user",
    "unsilence_user",
    "removed_suspend_user",
    "removed_unsuspend_user",
    "removed_silence_user",
    "removed_unsilence_user",
    "revoke_admin",
    "grant_admin_requested",
    "grant_admin",
    "revoke_moderation",
    "grant_moderation",
    "add_to_group",
    "remove_from_group",
    "change_primary_group",
    "change_trust_level",
    "lock_trust_level",
    "disable_second_factor_auth",
    "reset_bounce_score",
    "anonymize_user",
    "merge_user",
    "delete_user",
    "approve_user",
    "activate_user",
    "deactivate_user",
    "delete_post",
    "edit_post",
    "delete_sso_record",
    "task_failed",
}

# Penalty kinds that are re-tagged rather than deleted when history is cleared.
PENALTY_RETAG: Final[dict[str, str]] = {
    "silence_user": "removed_silence_user",
    "unsilence_user": "removed_unsilence_user",
    "suspend_user": "removed_suspend_user",
    "unsuspend_user": "removed_unsuspend_user",
}

# Notification kinds
NOTIFY_ACCOUNT_SUSPENDED: Final[str] = "account-suspended"
NOTIFY_ACCOUNT_SILENCED: Final[str] = "account-silenced"
NOTIFY_SECOND_FACTOR_DISABLED: Final[str] = "second-factor-disabled"
NOTIFY_ADMIN_CONFIRMATION: Final[str] = "admin-confirmation"
NOTIFY_TASK_FAILED: Final[str] = "task-failed"

# Post cascade actions
POST_ACTION_DELETE: Final[str] = "delete"
POST_ACTION_DELETE_REPLIES: Final[str] = "delete-with-replies"
POST_ACTION_EDIT: Final[str] = "edit"
POST_ACTIONS = {POST_ACTION_DELETE, POST_ACTION_DELETE_REPLIES, POST_ACTION_EDIT}

# Same-IP listing order
SAME_IP_ORDERS: Final[dict[str, str]] = {
    "trust_level": "trust_level DESC, id ASC",
    "created_at": "created_at DESC, id ASC",
}

# Operator-facing messages
ERROR_MESSAGES = {
    "already_suspended": "This user was already suspended by {staff} {time_ago} ago.",
    "already_silenced": "This user was already silenced by {staff} {time_ago} ago.",
    "automatic_group": "You cannot modify an automatic group.",
    "not_group_member": "The user is not a member of that group.",
    "invalid_boolean": "Invalid boolean value.",
    "invalid_trust_level": "Invalid trust level.",
    "invalid_account_id": "Invalid account id.",
    "nothing_to_disable": "The user has no second factor credentials to disable.",
    "account_not_found": "Account not found.",
    "confirmation_expired": "This admin confirmation has expired.",
}

ACTIVATED_BY_STAFF: Final[str] = "Account activated by staff"
DEACTIVATED_BY_STAFF: Final[str] = "Account deactivated by staff"
SAME_IP_DESTROY_REASON: Final[str] = "Same IP address ({ip}) as other users"
