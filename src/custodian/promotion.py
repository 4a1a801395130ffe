"""Contract for the external trust-level promotion component.

The engine only queries it; the scoring rules live elsewhere.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Account


@runtime_checkable
class Promotion(Protocol):
    async def met_criteria(self, account: Account, level: int) -> bool:
        """True when the account currently meets the requirements for ``level``."""
        ...

    async def tl3_lost(self, account: Account) -> bool:
        """True when a trust level 3 account no longer meets the level 3 requirements."""
        ...

    async def recalculate(self, account: Account, performed_by: Account) -> None:
        """Re-evaluate the account's automatic trust level."""
        ...


def validate_promotion(promotion: object) -> Promotion:
    """Validate and return the Promotion interface."""
    if not isinstance(promotion, Promotion):
        raise AttributeError(f"Object {promotion} does not implement the Promotion interface")
    return promotion


class NullPromotion:
    """Stand-in used when no scorer is wired: never triggers an auto-lock."""

    async def met_criteria(self, account: Account, level: int) -> bool:
        return False

    async def tl3_lost(self, account: Account) -> bool:
        return False

    async def recalculate(self, account: Account, performed_by: Account) -> None:
        return None
