# backend/booking_engine/models/service.py
"""
Provider service offerings.

Owned by catalog management; the booking engine only reads price,
duration and the active flag when resolving a booking request.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.sql import func
import ulid

from ..database import Base


class Service(Base):
    __tablename__ = "services"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    provider_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    price_cents = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_services_price_non_negative"),
        CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
    )

    def __repr__(self) -> str:
        return f"<Service {self.id}: provider={self.provider_id}, price={self.price_cents}>"
