# src/admin/routes.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from auth.models import User
from auth.routes import check_admin_role
from auth.schemas import UserResponse
from subscription.repository import SubscriptionRepository
from database import get_db

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/users", response_model=List[UserResponse], dependencies=[Depends(check_admin_role)])
def get_users(
    subscription_status: Optional[str] = None,
    membership_type: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Retrieve users, optionally filtered by their billing snapshot."""
    query = db.query(User)
    if subscription_status:
        query = query.filter(User.subscription_status == subscription_status)
    if membership_type:
        query = query.filter(User.membership_type == membership_type)
    return [UserResponse.model_validate(user) for user in query.order_by(User.id).all()]


@router.get("/subscriptions/stats", dependencies=[Depends(check_admin_role)])
def get_subscription_stats(db: Session = Depends(get_db)):
    """Subscription counts and revenue by status and by plan."""
    return SubscriptionRepository.get_statistics(db)
