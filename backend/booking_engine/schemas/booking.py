# backend/booking_engine/schemas/booking.py
"""
Booking schemas for the booking engine.

Bookings are self-contained: date and civil start/end times live on the
booking itself. Requests either reference a catalog service (price and
duration come from the catalog) or describe a custom booking with an
explicit provider, end time and price.
"""

from datetime import date, datetime, time
import re
from typing import List, Literal, Optional

from pydantic import ConfigDict, Field, field_validator

from ._strict_base import StrictModel, StrictRequestModel

DATE_ONLY_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _ensure_date_only(value: object, field_name: str) -> object:
    if isinstance(value, str):
        candidate = value.strip()
        if not DATE_ONLY_REGEX.fullmatch(candidate):
            raise ValueError(f"{field_name} must be a YYYY-MM-DD date-only string")
        return candidate
    return value


class BookingRequestCreate(StrictRequestModel):
    """
    A customer's request to book a provider.

    Either ``service_id`` (catalog booking) or ``provider_id`` + ``end_time``
    + ``price_cents`` (custom booking) must be given; the service layer
    enforces which combination is valid.
    """

    service_id: Optional[str] = Field(None, description="Catalog service to book")
    provider_id: Optional[str] = Field(None, description="Provider to book (custom bookings)")
    booking_date: date = Field(..., description="Date of the booking")
    start_time: time = Field(..., description="Start time (inclusive)")
    end_time: Optional[time] = Field(
        None, description="End time (exclusive); derived from the service duration if omitted"
    )
    price_cents: Optional[int] = Field(
        None, ge=0, description="Already-discounted price for custom bookings"
    )

    @field_validator("booking_date", mode="before")
    @classmethod
    def _enforce_date_only(cls, v: object) -> object:
        return _ensure_date_only(v, "booking_date")

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_time_string(cls, v: object) -> object:
        """Convert HH:MM strings to time objects."""
        if isinstance(v, str) and v.count(":") == 1:
            try:
                hour, minute = v.split(":")
                return time(int(hour), int(minute))
            except (ValueError, AttributeError):
                raise ValueError(f"Invalid time format: {v}. Expected HH:MM format.")
        return v

    @field_validator("service_id", "provider_id")
    @classmethod
    def _strip_ids(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() or None if v else v


class BookingDecline(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=500, description="Shown to the customer")


class BookingCancel(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=500, description="Cancellation reason")


class BookingResponse(StrictModel):
    """Booking as seen by its customer or provider."""

    model_config = ConfigDict(from_attributes=True, extra="forbid")

    id: str
    customer_id: str
    provider_id: str
    service_id: Optional[str] = None
    booking_date: date
    start_time: time
    end_time: time
    service_price_cents: int
    platform_fee_cents: int
    amount_total_cents: int
    currency: str
    flow: str
    status: str
    payment_status: str
    deposit_status: Optional[str] = None
    final_status: Optional[str] = None
    payment_intent_id: Optional[str] = None
    decline_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class BookingCreateResponse(StrictModel):
    """Pending booking plus the client secret the customer confirms the card with."""

    booking: BookingResponse
    client_secret: Optional[str] = Field(
        None, description="Stripe PaymentIntent client_secret for confirming the authorization"
    )


class BookingListResponse(StrictModel):
    items: List[BookingResponse]
    total: int
    role: Literal["customer", "provider"]
