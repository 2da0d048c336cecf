# backend/booking_engine/models/booking.py
"""
Booking model for the booking engine.

A booking reserves a half-open civil-time interval [start_time, end_time)
on one date with one provider, and carries the payment processor
references the webhook path uses to find it again.

Status and payment fields are owned by services.booking_state_machine;
nothing else writes them. Rows are never deleted: terminal bookings are
kept for audit.
"""

from datetime import datetime, timezone
from enum import Enum
import logging
import os
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import validates
from sqlalchemy.sql import func
import ulid

from ..database import Base

logger = logging.getLogger(__name__)

IS_SQLITE = os.getenv("DB_DIALECT", "").lower().startswith("sqlite")


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    ACCEPTED = "accepted"  # two-step flow only
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentStatus(str, Enum):
    """Local mirror of the processor-side payment state."""

    NONE = "none"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    CANCELED = "canceled"
    FAILED = "failed"


class DepositStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


class FinalStatus(str, Enum):
    NOT_STARTED = "not_started"
    PAID = "paid"
    FAILED = "failed"


class BookingFlowType(str, Enum):
    SINGLE_STEP = "single_step"
    TWO_STEP = "two_step"


# Statuses that hold a slot on the provider calendar
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.ACCEPTED,
    BookingStatus.CONFIRMED,
)

# Statuses the provider has committed to; a pending booking never blocks an accept
COMMITTED_BOOKING_STATUSES = (
    BookingStatus.ACCEPTED,
    BookingStatus.CONFIRMED,
)

TERMINAL_BOOKING_STATUSES = (
    BookingStatus.CONFIRMED,
    BookingStatus.DECLINED,
    BookingStatus.CANCELLED,
    BookingStatus.EXPIRED,
)

# Name of the PostgreSQL exclusion constraint created by the migration
NO_OVERLAP_CONSTRAINT = "bookings_no_overlap_per_provider"

PAYMENT_REFERENCE_FIELDS = ("payment_intent_id", "final_payment_intent_id", "checkout_session_id")


def _status_list(enum_cls: type[Enum]) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


class Booking(Base):
    """Self-contained booking record between a customer and a provider."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    # Parties are opaque references owned by the identity system
    customer_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(64), nullable=False, index=True)
    service_id = Column(String(26), ForeignKey("services.id"), nullable=True)

    # Civil time, no timezone conversion
    booking_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    # Commercial snapshot, immutable once set
    service_price_cents = Column(Integer, nullable=False)
    platform_fee_cents = Column(Integer, nullable=False)
    amount_total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")

    flow = Column(String(20), nullable=False, default=BookingFlowType.SINGLE_STEP)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING, index=True)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE)
    deposit_status = Column(String(20), nullable=True)
    final_status = Column(String(20), nullable=True)
    # Failed remainder charges; each retry gets a fresh idempotency key
    final_payment_attempts = Column(Integer, nullable=False, default=0, server_default="0")

    # Processor correlation keys
    payment_intent_id = Column(String(255), nullable=True, unique=True)
    final_payment_intent_id = Column(String(255), nullable=True, unique=True)
    checkout_session_id = Column(String(255), nullable=True, unique=True)
    request_key = Column(String(255), nullable=True, index=True)

    decline_reason = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    _table_constraints = [
        CheckConstraint(f"status IN ({_status_list(BookingStatus)})", name="ck_bookings_status"),
        CheckConstraint(
            f"payment_status IN ({_status_list(PaymentStatus)})",
            name="ck_bookings_payment_status",
        ),
        CheckConstraint(f"flow IN ({_status_list(BookingFlowType)})", name="ck_bookings_flow"),
        CheckConstraint("service_price_cents >= 0", name="ck_bookings_price_non_negative"),
        CheckConstraint("platform_fee_cents >= 0", name="ck_bookings_fee_non_negative"),
        CheckConstraint(
            "amount_total_cents = service_price_cents + platform_fee_cents",
            name="ck_bookings_amount_total",
        ),
    ]

    if not IS_SQLITE:
        _table_constraints.append(
            CheckConstraint("start_time < end_time", name="ck_bookings_time_order")
        )

    __table_args__ = tuple(_table_constraints)

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.status:
            self.status = BookingStatus.PENDING
        if not self.payment_status:
            self.payment_status = PaymentStatus.NONE
        if not self.flow:
            self.flow = BookingFlowType.SINGLE_STEP
        logger.info(
            f"Creating booking for customer {self.customer_id} with provider {self.provider_id}"
        )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: customer={self.customer_id}, "
            f"provider={self.provider_id}, date={self.booking_date}, "
            f"time={self.start_time}-{self.end_time}, status={self.status}, "
            f"payment={self.payment_status}>"
        )

    @validates(*PAYMENT_REFERENCE_FIELDS)
    def _validate_payment_reference(self, key: str, value: Optional[str]) -> Optional[str]:
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} is immutable once set (booking {self.id})")
        return value

    @property
    def is_two_step(self) -> bool:
        return self.flow == BookingFlowType.TWO_STEP

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES

    @property
    def deposit_cents(self) -> int:
        """Amount held at request time in the two-step flow."""
        return int(self.platform_fee_cents)

    def involves(self, actor_id: str) -> bool:
        return actor_id in (self.customer_id, self.provider_id)

    def slot(self) -> dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "date": self.booking_date.isoformat() if self.booking_date else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "provider_id": self.provider_id,
            "service_id": self.service_id,
            "booking_date": self.booking_date.isoformat() if self.booking_date else None,
            "start_time": str(self.start_time) if self.start_time else None,
            "end_time": str(self.end_time) if self.end_time else None,
            "service_price_cents": self.service_price_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "amount_total_cents": self.amount_total_cents,
            "currency": self.currency,
            "flow": self.flow,
            "status": self.status,
            "payment_status": self.payment_status,
            "deposit_status": self.deposit_status,
            "final_status": self.final_status,
            "final_payment_attempts": self.final_payment_attempts,
            "payment_intent_id": self.payment_intent_id,
            "decline_reason": self.decline_reason,
            "cancellation_reason": self.cancellation_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


Index(
    "ix_bookings_provider_date_status",
    Booking.provider_id,
    Booking.booking_date,
    Booking.status,
)
