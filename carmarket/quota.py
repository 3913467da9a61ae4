# carmarket/quota.py
"""Free-tier listing quota.

The gate is the user's live count of available listings. The cumulative
`free_listings_used` counter is informational only and never blocks
creation, so a free user who sells or loses listings to expiry can post
again even after exceeding the limit historically.
"""
from dataclasses import dataclass
from typing import Optional
from . import config
from .models import User


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    payment_required: bool
    active_count: int
    limit: Optional[int]


def can_create(user: User, active_count: int, limit: Optional[int] = None) -> QuotaDecision:
    if user.is_premium:
        return QuotaDecision(allowed=True, payment_required=False, active_count=active_count, limit=None)
    limit = config.FREE_LISTING_LIMIT if limit is None else limit
    allowed = active_count < limit
    return QuotaDecision(
        allowed=allowed, payment_required=not allowed, active_count=active_count, limit=limit
    )


def record_creation(user: User) -> None:
    # monotonic; premium creations are not counted
    if not user.is_premium:
        user.free_listings_used = (user.free_listings_used or 0) + 1
