# backend/booking_engine/services/booking_state_machine.py
"""
Booking State Machine

The only writer of booking status and payment fields. Every transition is a
compare-and-set on ``status`` (``UPDATE ... WHERE id = :id AND status IN
(:expected)``) so two concurrent writers can never both apply a transition
from the same state.

Reconciliation facts from the processor are applied monotonically: a
terminal booking is never moved again, and a fact that does not advance the
booking is a no-op rather than an error.
"""

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..core.exceptions import (
    ContactProviderException,
    ForbiddenException,
    InvalidBookingStateException,
    ValidationException,
)
from ..models.booking import (
    Booking,
    BookingStatus,
    DepositStatus,
    FinalStatus,
    PaymentStatus,
    utc_now,
)
from ..repositories import RepositoryFactory
from ..repositories.booking_repository import BookingRepository
from .base import BaseService

logger = logging.getLogger(__name__)

SLOT_UNAVAILABLE_REASON = "Time slot is no longer available"
AUTHORIZATION_EXPIRED_REASON = "Payment authorization expired before capture"


class PaymentFact(str, Enum):
    """What the processor says happened to a payment reference."""

    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELED = "canceled"


@dataclass(frozen=True)
class TransitionRule:
    name: str
    from_statuses: Tuple[BookingStatus, ...]
    to_status: BookingStatus
    values: Callable[[Booking], Dict[str, Any]]


def _confirmed_values(booking: Booking) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "payment_status": PaymentStatus.CAPTURED.value,
        "confirmed_at": utc_now(),
    }
    if booking.is_two_step:
        values["final_status"] = FinalStatus.PAID.value
        values["deposit_status"] = DepositStatus.PAID.value
    return values


def _accepted_values(booking: Booking) -> Dict[str, Any]:
    # Deposit captured; the remainder is still outstanding
    return {
        "payment_status": PaymentStatus.AUTHORIZED.value,
        "deposit_status": DepositStatus.PAID.value,
    }


def _released_values(payment_status: PaymentStatus) -> Callable[[Booking], Dict[str, Any]]:
    def build(booking: Booking) -> Dict[str, Any]:
        values: Dict[str, Any] = {"payment_status": payment_status.value}
        if booking.is_two_step and booking.deposit_status == DepositStatus.UNPAID.value:
            values["deposit_status"] = DepositStatus.FAILED.value
        return values

    return build


PENDING_ONLY = (BookingStatus.PENDING,)

TRANSITIONS: Dict[str, TransitionRule] = {
    "accept": TransitionRule("accept", PENDING_ONLY, BookingStatus.CONFIRMED, _confirmed_values),
    "accept_deposit": TransitionRule(
        "accept_deposit", PENDING_ONLY, BookingStatus.ACCEPTED, _accepted_values
    ),
    "pay_remaining": TransitionRule(
        "pay_remaining", (BookingStatus.ACCEPTED,), BookingStatus.CONFIRMED, _confirmed_values
    ),
    "decline": TransitionRule(
        "decline", PENDING_ONLY, BookingStatus.DECLINED, _released_values(PaymentStatus.CANCELED)
    ),
    "cancel": TransitionRule(
        "cancel", PENDING_ONLY, BookingStatus.CANCELLED, _released_values(PaymentStatus.CANCELED)
    ),
    "expire": TransitionRule(
        "expire", PENDING_ONLY, BookingStatus.EXPIRED, _released_values(PaymentStatus.FAILED)
    ),
    "conflict_release": TransitionRule(
        "conflict_release",
        PENDING_ONLY,
        BookingStatus.DECLINED,
        _released_values(PaymentStatus.CANCELED),
    ),
    "reconcile_failed": TransitionRule(
        "reconcile_failed",
        PENDING_ONLY,
        BookingStatus.CANCELLED,
        _released_values(PaymentStatus.FAILED),
    ),
    "reconcile_canceled": TransitionRule(
        "reconcile_canceled",
        PENDING_ONLY,
        BookingStatus.CANCELLED,
        _released_values(PaymentStatus.CANCELED),
    ),
}


class BookingStateMachine(BaseService):
    """
    Guarded transitions over the booking table.

    Callers own the surrounding transaction; this class only flushes.
    """

    def __init__(self, db: Session, repository: Optional[BookingRepository] = None):
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_booking_repository(db)

    def _apply(
        self,
        booking: Booking,
        rule_name: str,
        *,
        extra: Optional[Dict[str, Any]] = None,
        raise_on_lost_race: bool = True,
    ) -> bool:
        rule = TRANSITIONS[rule_name]
        values = {"status": rule.to_status.value, **rule.values(booking), **(extra or {})}
        changed = self.repository.compare_and_set_status(booking.id, rule.from_statuses, values)
        fresh = self.repository.get_fresh(booking.id)
        if not changed:
            current = fresh.status if fresh is not None else booking.status
            self.logger.info(
                f"Transition {rule_name} lost for booking {booking.id}: status is {current}"
            )
            if raise_on_lost_race:
                expected = " or ".join(s.value for s in rule.from_statuses)
                raise InvalidBookingStateException(booking.id, current, rule_name, expected)
            return False
        self.log_operation(
            "booking_transition",
            booking_id=booking.id,
            transition=rule_name,
            to_status=rule.to_status.value,
        )
        return True

    # Request-driven transitions

    def ensure_pending(self, booking: Booking, action: str) -> None:
        if booking.status != BookingStatus.PENDING.value:
            raise InvalidBookingStateException(booking.id, booking.status, action)

    def accept(self, booking: Booking) -> None:
        """Capture succeeded: single-step confirms, two-step records the deposit."""
        self._apply(booking, "accept_deposit" if booking.is_two_step else "accept")

    def pay_remaining(self, booking: Booking, final_reference: str) -> None:
        self.repository.attach_payment_reference(
            booking.id, "final_payment_intent_id", final_reference
        )
        self._apply(booking, "pay_remaining")

    def mark_final_failed(self, booking: Booking) -> bool:
        """Record a failed remainder charge; the booking stays accepted for a retry."""
        return self.repository.compare_and_set_status(
            booking.id,
            (BookingStatus.ACCEPTED,),
            {
                "final_status": FinalStatus.FAILED.value,
                "final_payment_attempts": Booking.final_payment_attempts + 1,
            },
        )

    def decline(self, booking: Booking, reason: Optional[str]) -> None:
        self._apply(booking, "decline", extra={"decline_reason": reason})

    def cancel(self, booking: Booking, reason: Optional[str]) -> None:
        """Customer cancellation; only a pending booking can be withdrawn."""
        if booking.status in (BookingStatus.CONFIRMED.value, BookingStatus.ACCEPTED.value):
            raise ContactProviderException(booking.id, booking.status)
        self._apply(
            booking,
            "cancel",
            extra={"cancellation_reason": reason, "cancelled_at": utc_now()},
        )

    def expire(self, booking: Booking) -> bool:
        return self._apply(
            booking,
            "expire",
            extra={"cancellation_reason": AUTHORIZATION_EXPIRED_REASON},
            raise_on_lost_race=False,
        )

    def conflict_release(self, booking: Booking) -> bool:
        return self._apply(
            booking,
            "conflict_release",
            extra={"decline_reason": SLOT_UNAVAILABLE_REASON},
            raise_on_lost_race=False,
        )

    # Processor-driven transitions

    def reconcile(self, booking: Booking, fact: PaymentFact, reference_field: str) -> bool:
        """
        Apply a processor fact monotonically.

        Args:
            booking: The booking owning the reference
            fact: What the processor reports
            reference_field: Which reference column matched
                (``payment_intent_id``, ``final_payment_intent_id`` or
                ``checkout_session_id``)

        Returns:
            True when the booking changed, False for a no-op.
        """
        status = booking.status
        is_final = reference_field == "final_payment_intent_id"

        if fact == PaymentFact.AUTHORIZED:
            if (
                status == BookingStatus.PENDING.value
                and booking.payment_status == PaymentStatus.NONE.value
            ):
                return self.repository.compare_and_set_status(
                    booking.id,
                    PENDING_ONLY,
                    {"payment_status": PaymentStatus.AUTHORIZED.value},
                )
            return False

        if fact == PaymentFact.CAPTURED:
            if booking.is_two_step and is_final:
                if status == BookingStatus.ACCEPTED.value:
                    return self._apply(booking, "pay_remaining", raise_on_lost_race=False)
                return False
            if status != BookingStatus.PENDING.value:
                if status not in (BookingStatus.CONFIRMED.value, BookingStatus.ACCEPTED.value):
                    self.logger.warning(
                        f"Capture reported for {status} booking {booking.id}; not resurrecting"
                    )
                return False
            rule = "accept_deposit" if booking.is_two_step else "accept"
            return self._apply(booking, rule, raise_on_lost_race=False)

        # Failed or canceled
        if booking.is_two_step and is_final:
            if status == BookingStatus.ACCEPTED.value:
                return self.mark_final_failed(booking)
            return False
        if status != BookingStatus.PENDING.value:
            return False
        rule = "reconcile_failed" if fact == PaymentFact.FAILED else "reconcile_canceled"
        return self._apply(
            booking,
            rule,
            extra={"cancellation_reason": f"Payment {fact.value}", "cancelled_at": utc_now()},
            raise_on_lost_race=False,
        )

    @staticmethod
    def ensure_participant(booking: Booking, actor_id: str, role: str) -> None:
        """Raise unless the actor holds the given role on the booking."""
        expected = booking.provider_id if role == "provider" else booking.customer_id
        if actor_id != expected:
            raise ForbiddenException(
                f"Only the booking's {role} can perform this action",
                code="forbidden",
                details={"booking_id": booking.id},
            )

    @staticmethod
    def ensure_involved(booking: Booking, actor_id: str) -> None:
        if not booking.involves(actor_id):
            raise ForbiddenException(
                "You do not have permission to access this booking",
                code="forbidden",
                details={"booking_id": booking.id},
            )

    @staticmethod
    def ensure_two_step(booking: Booking) -> None:
        if not booking.is_two_step:
            raise ValidationException(
                "Booking does not use the deposit flow",
                code="not_two_step",
                details={"booking_id": booking.id},
            )


def expected_amount_cents(booking: Booking, reference_field: str) -> int:
    """
    What the processor should report for a reference on this booking.

    Single-step charges the full total; the two-step deposit is the platform
    fee and the remainder is the service price.
    """
    if not booking.is_two_step:
        return int(booking.amount_total_cents)
    if reference_field == "final_payment_intent_id":
        return int(booking.service_price_cents)
    return booking.deposit_cents
