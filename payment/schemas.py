# src/payment/schemas.py
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional


class PaymentCreate(BaseModel):
    """Schema for starting a one-time payment."""
    amount: int = Field(..., gt=0, description="Amount in the minor currency unit")


class PaymentResponse(BaseModel):
    """Schema for payment response."""
    id: int
    user_id: int
    stripe_payment_intent_id: Optional[str]
    stripe_checkout_session_id: Optional[str]
    amount: int
    currency: str
    status: str
    webhook_event_ids: List[str] = []
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentIntentResponse(BaseModel):
    client_secret: Optional[str]
    payment_intent_id: str


class CheckoutResponse(BaseModel):
    url: str
