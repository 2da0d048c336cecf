# backend/booking_engine/models/payment_customer.py
"""Stripe Customer per booking customer; holds the card saved for off-session charges."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from ..database import Base


class PaymentCustomer(Base):
    __tablename__ = "payment_customers"

    customer_id = Column(String(64), primary_key=True)
    stripe_customer_id = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return (
            f"<PaymentCustomer(customer_id={self.customer_id}, "
            f"stripe_id={self.stripe_customer_id})>"
        )
