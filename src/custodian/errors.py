"""Error taxonomy for moderation commands.

Every error carries an HTTP-style ``status`` so an outer surface can map it
directly to a response code, plus an operator-facing ``message``.
"""

from __future__ import annotations

from typing import Any


class CustodianError(Exception):
    """Base class for all domain errors raised by the engine."""

    status: int = 400
    default_message: str = "The request could not be completed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"failed": "FAILED", "message": self.message}


class Unauthorized(CustodianError):
    status = 403
    default_message = "You are not permitted to perform this action."


class InvalidAccess(Unauthorized):
    """Guard failure inside a multi-step action (trust level, admin confirmation)."""

    default_message = "You are not permitted to change this account."


class Conflict(CustodianError):
    status = 409
    default_message = "The account is already in that state."


class ValidationError(CustodianError):
    status = 422
    default_message = "A required parameter is missing or malformed."

    def __init__(self, message: str | None = None, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class NotFound(CustodianError):
    status = 404
    default_message = "Not found."


class InvalidParameters(CustodianError):
    status = 400
    default_message = "Nothing to do for the given parameters."


class PostsExist(CustodianError):
    status = 403

    def __init__(self, username: str, count: int) -> None:
        self.username = username
        self.count = int(count)
        noun = "post" if self.count == 1 else "posts"
        super().__init__(f"Can't delete {username} because they have {self.count} {noun}. Delete all posts first.")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["deleted"] = False
        data["count"] = self.count
        return data
