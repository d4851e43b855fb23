# src/subscription/routes.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from access.dependencies import require_active_subscription
from access.gate import has_active_subscription, trial_info
from subscription.services import SubscriptionService
from subscription.schemas import (
    SubscriptionCreate,
    SubscriptionCancel,
    SubscriptionChangePlan,
    SubscriptionResponse,
    SubscriptionCreateResponse,
    SubscriptionStatusResponse,
    PlanResponse,
    PortalSessionCreate,
    PortalSessionResponse,
)
from auth.routes import get_current_user
from auth.models import User
from billing.dependencies import get_billing_provider, get_plan_catalog
from billing.plans import PlanCatalog
from billing.provider import StripeBillingProvider
from database import get_db

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_subscription_service(
    provider: StripeBillingProvider = Depends(get_billing_provider),
    catalog: PlanCatalog = Depends(get_plan_catalog)
) -> SubscriptionService:
    return SubscriptionService(provider, catalog)


@router.get("/plans", response_model=List[PlanResponse])
def get_plans(service: SubscriptionService = Depends(get_subscription_service)):
    """List the plans that can be subscribed to."""
    return service.list_plans()


@router.post("/create", response_model=SubscriptionCreateResponse, status_code=201)
def create_subscription(
    data: SubscriptionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    subscription, client_secret = service.create_subscription(
        current_user.id, data.price_id, data.payment_method_id, db, trial_days=data.trial_days
    )
    return {"subscription": subscription, "client_secret": client_secret}


@router.get("/current", response_model=Optional[SubscriptionResponse])
def get_current_subscription(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_active_subscription),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return service.get_user_subscription(current_user.id, db)


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(current_user: User = Depends(get_current_user)):
    """Billing snapshot and access decision for the current user."""
    return SubscriptionStatusResponse(
        subscription_id=current_user.subscription_id,
        subscription_status=current_user.subscription_status,
        membership_type=current_user.membership_type,
        access_level=current_user.access_level or 0,
        current_period_end=current_user.current_period_end,
        cancel_at_period_end=bool(current_user.cancel_at_period_end),
        has_active_subscription=has_active_subscription(current_user),
        trial=trial_info(current_user),
    )


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    data: SubscriptionCancel,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return service.cancel_subscription(current_user.id, db, immediate=data.immediate)


@router.post("/resume", response_model=SubscriptionResponse)
def resume_subscription(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return service.resume_subscription(current_user.id, db)


@router.post("/change-plan", response_model=SubscriptionResponse)
def change_subscription_plan(
    data: SubscriptionChangePlan,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return service.change_subscription_plan(current_user.id, data.price_id, db)


@router.get("/history", response_model=List[SubscriptionResponse])
def get_subscription_history(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return service.get_subscription_history(current_user.id, db)


@router.post("/portal", response_model=PortalSessionResponse)
def create_portal_session(
    data: PortalSessionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service)
):
    return {"url": service.create_portal_session(current_user.id, data.return_url, db)}


@router.get("/member-area")
def member_area(current_user: User = Depends(require_active_subscription)):
    return {"message": "Welcome to member area"}
