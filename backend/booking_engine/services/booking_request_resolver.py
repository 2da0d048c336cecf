# backend/booking_engine/services/booking_request_resolver.py
"""
Turns a booking request into a concrete provider, interval and price.

Catalog bookings take price and duration from the service; custom bookings
must name the provider, the end time and the price themselves.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundException, ValidationException
from ..repositories import RepositoryFactory
from ..schemas.booking import BookingRequestCreate
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedBookingRequest:
    provider_id: str
    service_id: Optional[str]
    booking_date: date
    start_time: time
    end_time: time
    price_cents: int


class BookingRequestResolver(BaseService):
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.now):
        super().__init__(db)
        self.service_repository = RepositoryFactory.create_service_repository(db)
        self.clock = clock

    def resolve(self, data: BookingRequestCreate) -> ResolvedBookingRequest:
        """
        Raises:
            NotFoundException: unknown service
            ValidationException: inactive service, incomplete custom booking,
                bad interval or a start time in the past
        """
        if data.service_id:
            resolved = self._resolve_catalog(data)
        else:
            resolved = self._resolve_custom(data)
        self._validate_interval(resolved)
        return resolved

    def _resolve_catalog(self, data: BookingRequestCreate) -> ResolvedBookingRequest:
        service = self.service_repository.get_by_id(data.service_id)
        if not service:
            raise NotFoundException("Service not found", code="service_not_found")
        if not service.is_active:
            raise ValidationException("Service is not available", code="service_unavailable")
        if data.provider_id and data.provider_id != service.provider_id:
            raise ValidationException(
                "Service does not belong to this provider", code="service_provider_mismatch"
            )

        end_time = data.end_time or self._calculate_end_time(
            data.booking_date, data.start_time, service.duration_minutes
        )
        return ResolvedBookingRequest(
            provider_id=service.provider_id,
            service_id=service.id,
            booking_date=data.booking_date,
            start_time=data.start_time,
            end_time=end_time,
            price_cents=service.price_cents,
        )

    @staticmethod
    def _resolve_custom(data: BookingRequestCreate) -> ResolvedBookingRequest:
        missing = [
            name
            for name, value in (
                ("provider_id", data.provider_id),
                ("end_time", data.end_time),
                ("price_cents", data.price_cents),
            )
            if value is None
        ]
        if missing:
            raise ValidationException(
                "Custom bookings require provider_id, end_time and price_cents",
                code="incomplete_request",
                details={"missing": missing},
            )
        return ResolvedBookingRequest(
            provider_id=data.provider_id,
            service_id=None,
            booking_date=data.booking_date,
            start_time=data.start_time,
            end_time=data.end_time,
            price_cents=data.price_cents,
        )

    @staticmethod
    def _calculate_end_time(booking_date: date, start_time: time, duration_minutes: int) -> time:
        end_datetime = datetime.combine(booking_date, start_time) + timedelta(
            minutes=duration_minutes
        )
        if end_datetime.date() != booking_date:
            raise ValidationException("Bookings must start and end on the same calendar day")
        return end_datetime.time()

    def _validate_interval(self, resolved: ResolvedBookingRequest) -> None:
        if resolved.end_time <= resolved.start_time:
            raise ValidationException(
                "Booking end time must be after the start time", code="invalid_interval"
            )
        starts_at = datetime.combine(resolved.booking_date, resolved.start_time)
        if starts_at <= self.clock():
            raise ValidationException("Booking must start in the future", code="start_in_past")
        if resolved.price_cents <= 0:
            raise ValidationException(
                "Price must be greater than zero",
                code="invalid_price",
                details={"price_cents": resolved.price_cents},
            )
