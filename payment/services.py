# src/payment/services.py
import logging
from typing import List
from uuid import uuid4

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth.models import User
from billing.exceptions import NotFoundFailure, PersistenceFailure
from billing.provider import StripeBillingProvider
from config import settings
from payment.models import Payment
from payment.repository import PaymentRepository
from payment.schemas import PaymentResponse, PaymentIntentResponse, CheckoutResponse

logger = logging.getLogger(__name__)

# intents in these states cannot be reused for a new charge
FINISHED_INTENT_STATUSES = ("canceled", "succeeded")


class PaymentService:
    def __init__(self, provider: StripeBillingProvider):
        self.provider = provider

    @staticmethod
    def _validate(db: Session, user_id: int, amount: int) -> User:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise HTTPException(status_code=400, detail="Invalid amount")
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundFailure("User not found")
        return user

    def create_payment_intent(self, user_id: int, amount: int, db: Session) -> PaymentIntentResponse:
        """Create a payment intent, or hand back the one the user already has open."""
        self._validate(db, user_id, amount)

        existing = PaymentRepository.find_latest_intent_by_user(db, user_id)
        if existing:
            intent = self.provider.retrieve_payment_intent(existing.stripe_payment_intent_id)
            if intent.get("status") not in FINISHED_INTENT_STATUSES:
                return PaymentIntentResponse(client_secret=intent.get("client_secret"), payment_intent_id=intent["id"])
            logger.info(f"Payment intent {intent['id']} for user {user_id} is {intent.get('status')}, creating a new one")

        attempt = PaymentRepository.count_intents_by_user(db, user_id)
        intent = self.provider.create_payment_intent(
            amount=amount,
            currency=settings.DEFAULT_CURRENCY,
            metadata={"user_id": str(user_id)},
            idempotency_key=f"payment-intent:{user_id}:{attempt}",
        )

        payment = Payment(
            user_id=user_id,
            amount=amount,
            currency=intent.get("currency") or settings.DEFAULT_CURRENCY,
            stripe_payment_intent_id=intent["id"],
            status="pending",
            webhook_event_ids=[],
        )
        db.add(payment)
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request stored the same intent first
            db.rollback()
            logger.info(f"Payment intent {intent['id']} already stored for user {user_id}")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not store payment intent {intent['id']} for user {user_id}: {e}", exc_info=True)
            raise PersistenceFailure() from e

        return PaymentIntentResponse(client_secret=intent.get("client_secret"), payment_intent_id=intent["id"])

    def create_checkout(self, user_id: int, amount: int, db: Session) -> CheckoutResponse:
        """Start a new hosted checkout session; sessions are never reused."""
        self._validate(db, user_id, amount)

        session = self.provider.create_checkout_session(
            line_items=[{
                "price_data": {
                    "currency": settings.DEFAULT_CURRENCY,
                    "product_data": {"name": settings.CHECKOUT_PRODUCT_NAME},
                    "unit_amount": amount,
                },
                "quantity": 1,
            }],
            success_url=f"{settings.FRONTEND_URL}/success",
            cancel_url=f"{settings.FRONTEND_URL}/cancel",
            metadata={"user_id": str(user_id)},
            idempotency_key=f"checkout:{user_id}:{uuid4().hex}",
        )

        PaymentRepository.add(db, Payment(
            user_id=user_id,
            amount=amount,
            currency=settings.DEFAULT_CURRENCY,
            stripe_checkout_session_id=session["id"],
            status="pending",
            webhook_event_ids=[],
        ))
        return CheckoutResponse(url=session["url"])

    @staticmethod
    def get_user_payments(user_id: int, db: Session) -> List[PaymentResponse]:
        payments = PaymentRepository.find_by_user_id(db, user_id)
        return [PaymentResponse.model_validate(p) for p in payments]
