# src/access/dependencies.py
from fastapi import Depends, HTTPException, status

from access.gate import has_access_level, has_active_subscription, has_membership
from auth.models import User
from auth.routes import get_current_user
from billing.plans import PLAN_TYPES
from database import utcnow
from subscription.models import ACTIVE_STATUSES


def require_active_subscription(current_user: User = Depends(get_current_user)) -> User:
    """Ensure the user has a live active or trialing subscription."""
    if has_active_subscription(current_user):
        return current_user
    if current_user.subscription_status in ACTIVE_STATUSES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Subscription expired")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "error": "Active subscription required",
            "subscription_status": current_user.subscription_status or "none",
        },
    )


def require_membership_type(*allowed_types: str):
    """Dependency factory: user must hold one of the given membership types."""
    unknown = set(allowed_types) - set(PLAN_TYPES)
    if unknown:
        raise ValueError(f"Unknown membership types: {', '.join(sorted(unknown))}")

    def dependency(current_user: User = Depends(get_current_user)) -> User:
        now = utcnow()
        if not has_active_subscription(current_user, now):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Active subscription required")
        if not has_membership(current_user, allowed_types, now):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": f"This feature requires one of these membership types: {', '.join(allowed_types)}",
                    "current_membership": current_user.membership_type or "none",
                },
            )
        return current_user

    return dependency


def require_access_level(min_level: int):
    """Dependency factory: user must have at least ``min_level`` access."""
    def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_access_level(current_user, min_level):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": f"This feature requires access level {min_level} or higher",
                    "current_access_level": current_user.access_level or 0,
                },
            )
        return current_user

    return dependency
