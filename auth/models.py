# src/auth/models.py
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.orm import relationship
from database import Base, utcnow
from datetime import datetime


class User(Base):
    """Represents a user and the denormalized snapshot of their subscription."""
    __tablename__ = "users"

    id: int = Column(Integer, primary_key=True, index=True)
    email: str = Column(String, unique=True, index=True, nullable=False)
    name: str = Column(String, nullable=False)
    password_hash: str = Column(String, nullable=False)
    role: str = Column(String, nullable=False, default="member")  # member, admin

    # Customer link, set when the Stripe customer is created or reused
    stripe_customer_id: str = Column(String, nullable=True, index=True)
    default_payment_method_id: str = Column(String, nullable=True)

    # Snapshot of the current Subscription, written only by sync_user_subscription
    subscription_id: str = Column(String, nullable=True)
    subscription_status: str = Column(String, nullable=True)
    subscription_plan_id: str = Column(String, nullable=True)
    subscription_plan_name: str = Column(String, nullable=True)
    current_period_start: datetime = Column(DateTime, nullable=True)
    current_period_end: datetime = Column(DateTime, nullable=True)
    cancel_at_period_end: bool = Column(Boolean, nullable=False, default=False)
    canceled_at: datetime = Column(DateTime, nullable=True)
    trial_end: datetime = Column(DateTime, nullable=True)
    membership_type: str = Column(String, nullable=True)  # basic, premium, elite
    access_level: int = Column(Integer, nullable=False, default=0)  # 0..3

    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow)

    payments = relationship("Payment", back_populates="user")
    subscriptions = relationship("Subscription", back_populates="user")
