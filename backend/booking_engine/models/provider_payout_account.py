# backend/booking_engine/models/provider_payout_account.py
"""Connected payout account per provider (one account per provider)."""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from ..database import Base


class ProviderPayoutAccount(Base):
    __tablename__ = "provider_payout_accounts"

    provider_id = Column(String(64), primary_key=True)
    stripe_account_id = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
