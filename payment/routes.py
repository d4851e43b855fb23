# src/payment/routes.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from payment.services import PaymentService
from payment.schemas import PaymentCreate, PaymentResponse, PaymentIntentResponse, CheckoutResponse
from auth.routes import get_current_user
from auth.models import User
from billing.dependencies import get_billing_provider
from billing.provider import StripeBillingProvider
from database import get_db

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payment_service(provider: StripeBillingProvider = Depends(get_billing_provider)) -> PaymentService:
    return PaymentService(provider)


@router.post("/intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    payment: PaymentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service)
):
    """Create (or reuse) a payment intent for the current user."""
    return service.create_payment_intent(current_user.id, payment.amount, db)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    payment: PaymentCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service)
):
    """Start a hosted checkout session and return its URL."""
    return service.create_checkout(current_user.id, payment.amount, db)


@router.get("/", response_model=List[PaymentResponse])
def get_user_payments(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return PaymentService.get_user_payments(current_user.id, db)
