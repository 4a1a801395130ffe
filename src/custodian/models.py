from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional

from .utils import as_utc, to_iso


PenaltyKind = Literal["suspension", "silence"]


@dataclass(frozen=True)
class Account:
    """Snapshot of an account row. Mutations go through AccountStore."""

    id: int
    username: str
    email: str
    created_at: datetime
    name: Optional[str] = None
    bio: Optional[str] = None
    website: Optional[str] = None
    ip_address: Optional[str] = None
    registration_ip: Optional[str] = None
    admin: bool = False
    moderator: bool = False
    trust_level: int = 0
    manual_locked_trust_level: Optional[int] = None
    active: bool = False
    approved: bool = False
    approved_by_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    anonymized: bool = False
    merged_into_id: Optional[int] = None
    primary_group_id: Optional[int] = None
    suspended_at: Optional[datetime] = None
    suspended_till: Optional[datetime] = None
    silenced_at: Optional[datetime] = None
    silenced_till: Optional[datetime] = None

    @property
    def staff(self) -> bool:
        return self.admin or self.moderator

    @property
    def merged(self) -> bool:
        return self.merged_into_id is not None

    def is_suspended(self, now: datetime) -> bool:
        return self.suspended_till is not None and self.suspended_till > as_utc(now)

    def is_silenced(self, now: datetime) -> bool:
        if self.silenced_at is None:
            return False
        return self.silenced_till is None or self.silenced_till > as_utc(now)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = to_iso(value)
        return data


@dataclass(frozen=True)
class PenaltyRecord:
    id: int
    kind: PenaltyKind
    account_id: int
    acting_operator_id: int
    reason: str
    message: Optional[str]
    created_at: datetime
    expires_at: Optional[datetime]
    active: bool


@dataclass(frozen=True)
class AuditRecord:
    id: int
    kind: str
    actor_id: Optional[int]
    target_account_id: Optional[int]
    created_at: datetime
    details: dict[str, Any]
    post_id: Optional[int] = None
    context: Optional[str] = None


@dataclass(frozen=True)
class Group:
    id: int
    name: str
    automatic: bool


@dataclass(frozen=True)
class Post:
    id: int
    author_id: int
    raw: str
    created_at: datetime
    reply_to_post_id: Optional[int] = None
    deleted_at: Optional[datetime] = None
    deleted_by_id: Optional[int] = None

    @property
    def deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class EmailToken:
    id: int
    account_id: int
    email: str
    token: str
    created_at: datetime
    confirmed: bool
    expired: bool


@dataclass(frozen=True)
class Reviewable:
    id: int
    account_id: int
    status: str
    created_at: datetime
    resolved_by_id: Optional[int] = None
    resolved_at: Optional[datetime] = None


@dataclass(frozen=True)
class AdminConfirmation:
    token_hash: str
    account_id: int
    requested_by_id: int
    created_at: datetime
    expires_at: datetime
    # Raw token, present only on the record returned at creation.
    token: Optional[str] = None

    def expired(self, now: datetime) -> bool:
        return self.expires_at <= as_utc(now)


@dataclass(frozen=True)
class DestroyOptions:
    block_email: bool = False
    block_urls: bool = False
    block_ip: bool = False
    delete_as_spammer: bool = False
    delete_posts: bool = False
    context: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DestroyOptions":
        return cls(
            block_email=bool(data.get("block_email")),
            block_urls=bool(data.get("block_urls")),
            block_ip=bool(data.get("block_ip")),
            delete_as_spammer=bool(data.get("delete_as_spammer")),
            delete_posts=bool(data.get("delete_posts")),
            context=data.get("context"),
        )


# Command results


@dataclass(frozen=True)
class SuspensionResult:
    reason: str
    full_reason: str
    suspended_till: Optional[datetime]
    suspended_at: Optional[datetime]


@dataclass(frozen=True)
class SilenceResult:
    silenced: bool
    reason: str
    full_reason: str
    silenced_till: Optional[datetime]
    silenced_at: Optional[datetime]
    silenced_by_id: int


@dataclass(frozen=True)
class DestroyResult:
    deleted: bool
    scheduled: bool = False
    account: Optional[Account] = None


@dataclass(frozen=True)
class AnonymizeResult:
    success: bool
    username: Optional[str] = None
    account: Optional[Account] = None


@dataclass(frozen=True)
class Accepted:
    accepted: bool = True
    task_key: Optional[str] = None


@dataclass
class BulkApproveResult:
    approved: list[int] = field(default_factory=list)
    failed: dict[Any, str] = field(default_factory=dict)
