# src/subscription/schemas.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional


class SubscriptionCreate(BaseModel):
    """Schema for creating a subscription."""
    price_id: str
    payment_method_id: str
    trial_days: Optional[int] = Field(default=None, ge=0)


class SubscriptionCancel(BaseModel):
    immediate: bool = False


class SubscriptionChangePlan(BaseModel):
    price_id: str


class PortalSessionCreate(BaseModel):
    return_url: str


class SubscriptionResponse(BaseModel):
    """Schema for subscription response."""
    id: int
    user_id: int
    stripe_subscription_id: str
    stripe_customer_id: str
    stripe_price_id: str
    stripe_product_id: Optional[str]
    status: str
    plan_name: str
    plan_type: str
    billing_interval: Optional[str]
    amount: int
    currency: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    canceled_at: Optional[datetime]
    ended_at: Optional[datetime]
    trial_start: Optional[datetime]
    trial_end: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionCreateResponse(BaseModel):
    subscription: SubscriptionResponse
    client_secret: Optional[str] = None


class PlanResponse(BaseModel):
    id: str
    product_id: Optional[str]
    name: str
    description: Optional[str]
    type: str
    amount: Optional[int]
    currency: Optional[str]
    interval: Optional[str]
    interval_count: Optional[int]
    features: List[str] = []


class TrialInfo(BaseModel):
    is_trialing: bool
    days_left: int
    trial_end: datetime


class SubscriptionStatusResponse(BaseModel):
    """Billing snapshot as seen by the access checks."""
    subscription_id: Optional[str]
    subscription_status: Optional[str]
    membership_type: Optional[str]
    access_level: int
    current_period_end: Optional[datetime]
    cancel_at_period_end: bool
    has_active_subscription: bool
    trial: Optional[TrialInfo] = None


class PortalSessionResponse(BaseModel):
    url: str
