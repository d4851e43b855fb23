# src/access/gate.py
"""Access decisions taken from the billing snapshot stored on the user.

These never call Stripe: the snapshot is kept current by the subscription
sync step, and a short staleness window is accepted in exchange for cheap
checks on every request.
"""
import math
from datetime import datetime
from typing import Iterable, Optional

from database import utcnow
from subscription.models import ACTIVE_STATUSES


def has_active_subscription(user, now: Optional[datetime] = None) -> bool:
    if user.subscription_status not in ACTIVE_STATUSES:
        return False
    if user.current_period_end is None:
        return True
    return (now or utcnow()) <= user.current_period_end


def has_membership(user, allowed_types: Iterable[str], now: Optional[datetime] = None) -> bool:
    return has_active_subscription(user, now) and user.membership_type in set(allowed_types)


def has_access_level(user, min_level: int, now: Optional[datetime] = None) -> bool:
    return (user.access_level or 0) >= min_level and has_active_subscription(user, now)


def trial_info(user, now: Optional[datetime] = None) -> Optional[dict]:
    """Days left in the user's trial, or None when not trialing."""
    if user.subscription_status != "trialing" or user.trial_end is None:
        return None
    seconds_left = (user.trial_end - (now or utcnow())).total_seconds()
    return {
        "is_trialing": True,
        "days_left": math.ceil(seconds_left / 86400),
        "trial_end": user.trial_end,
    }
