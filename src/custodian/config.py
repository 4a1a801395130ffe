from __future__ import annotations

import os
from dataclasses import dataclass


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    sqlite_path: str = "custodian.sqlite3"
    log_level: str = "INFO"
    queue_max_batch: int = 4
    queue_every_ms: int = 100
    queue_max_size: int = 10_000
    # Unconfirmed admin grants expire after this window.
    admin_confirmation_ttl_hours: int = 24
    email_token_valid_hours: int = 48
    same_ip_delete_cap: int = 50
    # Destroys that would delete more posts than this run as deferred tasks.
    destroy_inline_post_limit: int = 100
    post_delete_batch_size: int = 100
    # Replayed deferred tasks with an already-claimed key are skipped.
    task_idempotency_enabled: bool = True


def load_settings() -> Settings:
    return Settings(
        sqlite_path=(os.getenv("SQLITE_PATH", "custodian.sqlite3").strip() or "custodian.sqlite3"),
        log_level=(os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
        queue_max_batch=_get_int("QUEUE_MAX_BATCH", 4),
        queue_every_ms=_get_int("QUEUE_EVERY_MS", 100),
        queue_max_size=_get_int("QUEUE_MAX_SIZE", 10_000),
        admin_confirmation_ttl_hours=max(1, _get_int("ADMIN_CONFIRMATION_TTL_HOURS", 24)),
        email_token_valid_hours=max(1, _get_int("EMAIL_TOKEN_VALID_HOURS", 48)),
        same_ip_delete_cap=max(1, _get_int("SAME_IP_DELETE_CAP", 50)),
        destroy_inline_post_limit=max(0, _get_int("DESTROY_INLINE_POST_LIMIT", 100)),
        post_delete_batch_size=max(1, _get_int("POST_DELETE_BATCH_SIZE", 100)),
        task_idempotency_enabled=_get_bool("TASK_IDEMPOTENCY_ENABLED", True),
    )
