# src/subscription/models.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, JSON, BigInteger, Index
from sqlalchemy.orm import relationship
from database import Base, utcnow
from datetime import datetime

ACTIVE_STATUSES = ("active", "trialing")


class Subscription(Base):
    """Authoritative local record of a Stripe subscription."""
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_user_status", "user_id", "status"),)

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    stripe_subscription_id: str = Column(String, unique=True, index=True, nullable=False)
    stripe_customer_id: str = Column(String, index=True, nullable=False)
    stripe_price_id: str = Column(String, nullable=False)
    stripe_product_id: str = Column(String, nullable=True)

    # active, canceled, past_due, incomplete, incomplete_expired, trialing, unpaid
    status: str = Column(String, nullable=False, index=True)

    plan_name: str = Column(String, nullable=False)
    plan_type: str = Column(String, nullable=False)  # basic, premium, elite
    billing_interval: str = Column(String, nullable=True)  # month, year
    amount: int = Column(Integer, nullable=False, default=0)
    currency: str = Column(String, nullable=False, default="usd")

    current_period_start: datetime = Column(DateTime, nullable=True)
    current_period_end: datetime = Column(DateTime, nullable=True, index=True)
    cancel_at_period_end: bool = Column(Boolean, nullable=False, default=False)
    canceled_at: datetime = Column(DateTime, nullable=True)
    ended_at: datetime = Column(DateTime, nullable=True)
    trial_start: datetime = Column(DateTime, nullable=True)
    trial_end: datetime = Column(DateTime, nullable=True)

    extra_metadata: dict = Column("metadata", JSON, nullable=True)

    # epoch seconds of the provider snapshot last written to this row
    provider_synced_at: int = Column(BigInteger, nullable=True)

    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="subscriptions")

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
