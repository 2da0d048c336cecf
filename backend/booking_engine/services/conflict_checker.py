# backend/booking_engine/services/conflict_checker.py
"""
Conflict Checker Service

Answers "does an active booking on this provider's calendar overlap this
interval?" at two strengths:

- Pre-check: a plain query run before any payment call, so customers are not
  charged for slots that are obviously taken. Advisory only.
- Authoritative check: run inside the write transaction. PostgreSQL enforces
  the ``bookings_no_overlap_per_provider`` exclusion constraint; the
  transaction is additionally opened at SERIALIZABLE isolation and the overlap
  query is repeated immediately before the write, which is the whole guarantee
  on engines without range exclusion.

Database errors raised by either mechanism are translated into
BookingConflictException by ``is_conflict_error``.
"""

from datetime import date, time
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..core.exceptions import BookingConflictException
from ..models.booking import ACTIVE_BOOKING_STATUSES, NO_OVERLAP_CONSTRAINT, BookingStatus
from ..repositories import RepositoryFactory
from ..repositories.booking_repository import BookingRepository
from .base import BaseService

logger = logging.getLogger(__name__)

PROVIDER_CONFLICT_MESSAGE = (
    "This time slot is no longer available on the provider's calendar. "
    "Please choose a different time."
)

EXCLUSION_VIOLATION = "23P01"
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"


def build_slot_details(
    provider_id: str, booking_date: date, start_time: time, end_time: time
) -> Dict[str, str]:
    """Slot metadata attached to every conflict error."""
    return {
        "provider_id": provider_id,
        "date": booking_date.isoformat(),
        "start_time": start_time.strftime("%H:%M"),
        "end_time": end_time.strftime("%H:%M"),
    }


def is_conflict_error(exc: BaseException) -> bool:
    """
    True when a database error means "another writer holds this slot".

    Covers the exclusion constraint, serialization failures and deadlocks on
    PostgreSQL, and lock contention on SQLite.
    """
    if not isinstance(exc, DBAPIError):
        return False
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in (EXCLUSION_VIOLATION, SERIALIZATION_FAILURE, DEADLOCK_DETECTED):
        return True

    constraint_name = ""
    diag = getattr(orig, "diag", None)
    if diag is not None:
        constraint_name = getattr(diag, "constraint_name", "") or ""
    if constraint_name == NO_OVERLAP_CONSTRAINT:
        return True

    message = str(orig if orig is not None else exc).lower()
    if isinstance(exc, IntegrityError):
        return NO_OVERLAP_CONSTRAINT in message
    if isinstance(exc, OperationalError):
        return (
            "deadlock detected" in message
            or "could not serialize access" in message
            or "database is locked" in message
        )
    return False


class ConflictChecker(BaseService):
    """
    Service for checking booking conflicts on a provider calendar.

    Conflict means half-open interval intersection with a booking whose
    status is pending, accepted or confirmed.
    """

    def __init__(self, db: Session, repository: Optional[BookingRepository] = None):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = repository or RepositoryFactory.create_booking_repository(db)

    @BaseService.measure_operation("check_booking_conflicts")
    def check_booking_conflicts(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        exclude_booking_id: Optional[str] = None,
        statuses: Iterable[BookingStatus] = ACTIVE_BOOKING_STATUSES,
    ) -> List[Dict[str, Any]]:
        """
        List the bookings overlapping a time range.

        Args:
            provider_id: The provider whose calendar is checked
            booking_date: The date to check
            start_time: Start of the candidate interval (inclusive)
            end_time: End of the candidate interval (exclusive)
            exclude_booking_id: Booking to ignore, typically the one being accepted
            statuses: Which statuses block the slot (all active ones by default)

        Returns:
            List of conflicts with booking details
        """
        bookings = self.repository.find_overlapping(
            provider_id, booking_date, start_time, end_time, exclude_booking_id, statuses
        )
        conflicts = [
            {
                "booking_id": booking.id,
                "start_time": booking.start_time.isoformat(),
                "end_time": booking.end_time.isoformat(),
                "status": booking.status,
            }
            for booking in bookings
        ]
        if conflicts:
            self.logger.warning(
                f"Found {len(conflicts)} conflicts for provider {provider_id} on {booking_date}"
            )
        return conflicts

    def has_conflict(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        exclude_booking_id: Optional[str] = None,
    ) -> bool:
        """Advisory pre-check; never the last word on availability."""
        return self.repository.has_overlap(
            provider_id, booking_date, start_time, end_time, exclude_booking_id
        )

    def ensure_slot_available(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        """Raise BookingConflictException if the pre-check finds an overlap."""
        if self.has_conflict(provider_id, booking_date, start_time, end_time, exclude_booking_id):
            raise BookingConflictException(
                PROVIDER_CONFLICT_MESSAGE,
                details=build_slot_details(provider_id, booking_date, start_time, end_time),
            )

    def begin_authoritative_check(self) -> None:
        """Open the write transaction at SERIALIZABLE isolation."""
        self.repository.use_serializable_isolation()

    def authoritative_check(
        self,
        provider_id: str,
        booking_date: date,
        start_time: time,
        end_time: time,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        """
        Re-validate inside the caller's write transaction.

        Must run after ``begin_authoritative_check`` and before the write that
        claims the slot, within the same transaction.
        """
        conflicts = self.check_booking_conflicts(
            provider_id, booking_date, start_time, end_time, exclude_booking_id
        )
        if conflicts:
            details = build_slot_details(provider_id, booking_date, start_time, end_time)
            details["conflicting_booking_ids"] = [c["booking_id"] for c in conflicts]
            raise BookingConflictException(PROVIDER_CONFLICT_MESSAGE, details=details)
