# backend/booking_engine/repositories/booking_repository.py
"""
Booking Repository

Data access for bookings: overlap queries for the conflict detector,
processor-reference lookups for the webhook path, and the atomic
compare-and-set that every status transition goes through.
"""

from datetime import date, time
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import (
    ACTIVE_BOOKING_STATUSES,
    PAYMENT_REFERENCE_FIELDS,
    Booking,
    BookingStatus,
)
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking data access."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_fresh(self, booking_id: str) -> Optional[Booking]:
        """Load a booking bypassing any stale identity-map state."""
        try:
            return (
                self.db.query(Booking)
                .populate_existing()
                .filter(Booking.id == booking_id)
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load booking: {str(e)}") from e

    # Conflict queries

    def find_overlapping(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        exclude_booking_id: Optional[str] = None,
        statuses: Iterable[str] = ACTIVE_BOOKING_STATUSES,
    ) -> List[Booking]:
        """
        Active bookings for the provider intersecting [start_time, end_time).

        Half-open intervals: a booking ending at 15:00 does not overlap one
        starting at 15:00.
        """
        try:
            query = self.db.query(Booking).filter(
                Booking.provider_id == provider_id,
                Booking.booking_date == booking_date,
                Booking.status.in_([str(getattr(s, "value", s)) for s in statuses]),
                Booking.start_time < end_time,
                Booking.end_time > start_time,
            )
            if exclude_booking_id:
                query = query.filter(Booking.id != exclude_booking_id)
            return query.order_by(Booking.start_time).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error checking overlaps for provider {provider_id}: {str(e)}")
            raise RepositoryException(f"Failed to check booking overlaps: {str(e)}") from e

    def has_overlap(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        exclude_booking_id: Optional[str] = None,
    ) -> bool:
        return bool(
            self.find_overlapping(
                provider_id, booking_date, start_time, end_time, exclude_booking_id
            )
        )

    # Lookups

    def get_active_by_request_key(self, customer_id: str, request_key: str) -> Optional[Booking]:
        """An in-flight booking created by the same logical request, if any."""
        try:
            return (
                self.db.query(Booking)
                .filter(
                    Booking.customer_id == customer_id,
                    Booking.request_key == request_key,
                    Booking.status.in_([s.value for s in ACTIVE_BOOKING_STATUSES]),
                )
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading booking by request key: {str(e)}")
            raise RepositoryException(f"Failed to load booking: {str(e)}") from e

    def get_by_payment_reference(self, reference: str) -> Optional[Tuple[Booking, str]]:
        """
        Find the booking owning a processor reference.

        Returns:
            (booking, field_name) where field_name is the matching reference
            column, or None when no booking owns the reference.
        """
        if not reference:
            return None
        try:
            for field in PAYMENT_REFERENCE_FIELDS:
                booking = (
                    self.db.query(Booking)
                    .populate_existing()
                    .filter(getattr(Booking, field) == reference)
                    .first()
                )
                if booking is not None:
                    return booking, field
            return None
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding booking by payment reference {reference}: {str(e)}")
            raise RepositoryException(f"Failed to find booking: {str(e)}") from e

    def list_for_actor(
        self,
        actor_id: str,
        role: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Booking]:
        """Bookings where the actor is the customer or the provider."""
        column = Booking.provider_id if role == "provider" else Booking.customer_id
        query = self._build_query().filter(column == actor_id)
        if status:
            query = query.filter(Booking.status == status)
        query = query.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        return self._execute_query(query.offset(skip).limit(limit))

    # Writes

    def compare_and_set_status(
        self,
        booking_id: str,
        expected_statuses: Iterable[BookingStatus],
        values: Dict[str, Any],
    ) -> bool:
        """
        Atomically apply ``values`` only while the booking is still in one of
        ``expected_statuses``.

        Returns:
            True when exactly one row changed; False when another writer moved
            the booking first.
        """
        expected = [str(getattr(s, "value", s)) for s in expected_statuses]
        try:
            updated = (
                self.db.query(Booking)
                .filter(Booking.id == booking_id, Booking.status.in_(expected))
                .update(values, synchronize_session=False)
            )
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error(f"Status update failed for booking {booking_id}: {str(e)}")
            raise
        return updated == 1

    def attach_payment_reference(self, booking_id: str, field: str, reference: str) -> bool:
        """Set a processor reference only if it has never been set."""
        if field not in PAYMENT_REFERENCE_FIELDS:
            raise ValueError(f"Unknown payment reference field: {field}")
        column = getattr(Booking, field)
        updated = (
            self.db.query(Booking)
            .filter(Booking.id == booking_id, column.is_(None))
            .update({field: reference}, synchronize_session=False)
        )
        self.db.flush()
        return updated == 1

    def use_serializable_isolation(self) -> None:
        """
        Start the next transaction at SERIALIZABLE isolation.

        Must be called before the session begins its write transaction; a
        session that is already inside a transaction keeps its isolation.
        """
        if self.db.in_transaction():
            self.logger.debug("Session already in a transaction; isolation unchanged")
            return
        self.db.connection(execution_options={"isolation_level": "SERIALIZABLE"})
