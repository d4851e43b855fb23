# src/payment/models.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, JSON
from sqlalchemy.orm import relationship
from database import Base, utcnow
from datetime import datetime


class Payment(Base):
    """Represents a one-time charge attempt."""
    __tablename__ = "payments"

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # exactly one of these is set, depending on the creation path
    stripe_payment_intent_id: str = Column(String, unique=True, nullable=True)
    stripe_checkout_session_id: str = Column(String, unique=True, nullable=True)
    amount: int = Column(Integer, nullable=False)  # minor currency unit
    currency: str = Column(String, nullable=False, default="usd")
    status: str = Column(String, nullable=False, default="pending")  # pending, paid, failed
    webhook_event_ids: list = Column(JSON, nullable=False, default=list)
    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="payments")
