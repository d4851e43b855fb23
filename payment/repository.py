# src/payment/repository.py
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from database import commit_or_raise
from payment.models import Payment

logger = logging.getLogger(__name__)


class PaymentRepository:
    @staticmethod
    def add(db: Session, payment: Payment) -> Payment:
        db.add(payment)
        commit_or_raise(db, f"store payment for user {payment.user_id}")
        db.refresh(payment)
        return payment

    @staticmethod
    def find_by_user_id(db: Session, user_id: int) -> List[Payment]:
        return db.query(Payment).filter(
            Payment.user_id == user_id
        ).order_by(Payment.created_at.desc(), Payment.id.desc()).all()

    @staticmethod
    def find_latest_intent_by_user(db: Session, user_id: int) -> Optional[Payment]:
        return db.query(Payment).filter(
            Payment.user_id == user_id,
            Payment.stripe_payment_intent_id.isnot(None)
        ).order_by(Payment.created_at.desc(), Payment.id.desc()).first()

    @staticmethod
    def count_intents_by_user(db: Session, user_id: int) -> int:
        return db.query(Payment).filter(
            Payment.user_id == user_id,
            Payment.stripe_payment_intent_id.isnot(None)
        ).count()

    @staticmethod
    def find_by_intent_id(db: Session, payment_intent_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.stripe_payment_intent_id == payment_intent_id).first()

    @staticmethod
    def find_by_session_id(db: Session, checkout_session_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.stripe_checkout_session_id == checkout_session_id).first()

    @staticmethod
    def mark_paid(db: Session, payment: Payment, event_id: str) -> Payment:
        """Mark the payment paid once per webhook event id."""
        if event_id in (payment.webhook_event_ids or []):
            logger.info(f"Event {event_id} already applied to payment {payment.id}")
            return payment
        payment.status = "paid"
        payment.webhook_event_ids = [*(payment.webhook_event_ids or []), event_id]
        commit_or_raise(db, f"mark payment {payment.id} paid")
        db.refresh(payment)
        return payment

    @staticmethod
    def mark_failed(db: Session, payment: Payment, event_id: str) -> Payment:
        """Mark the payment failed once per event id; a paid payment stays paid."""
        if event_id in (payment.webhook_event_ids or []):
            logger.info(f"Event {event_id} already applied to payment {payment.id}")
            return payment
        if payment.status != "paid":
            payment.status = "failed"
        payment.webhook_event_ids = [*(payment.webhook_event_ids or []), event_id]
        commit_or_raise(db, f"mark payment {payment.id} failed")
        db.refresh(payment)
        return payment
