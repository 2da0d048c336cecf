# backend/booking_engine/services/webhook_reconciler.py
"""
Webhook Reconciler

Applies Stripe payment events to bookings. Delivery is at-least-once and
unordered, so processing is:

1. authenticated (signature) before anything is read,
2. deduplicated through the ``webhook_events`` ledger,
3. applied monotonically through the booking state machine,

with the ledger row and the booking mutation committed together. A replayed
event finds its ledger row and does nothing.
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import MetadataMismatchException, WebhookSignatureException
from ..models.booking import Booking
from ..models.webhook_event import WebhookEventStatus
from ..repositories import RepositoryFactory
from .base import BaseService
from .booking_state_machine import BookingStateMachine, PaymentFact, expected_amount_cents
from .payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "stripe"

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_REJECTED = "rejected"

# Event type -> fact. checkout.session.completed is handled separately since
# it only means "captured" once the session is paid.
EVENT_FACTS: Dict[str, PaymentFact] = {
    "payment_intent.succeeded": PaymentFact.CAPTURED,
    "payment_intent.payment_failed": PaymentFact.FAILED,
    "payment_intent.canceled": PaymentFact.CANCELED,
    "payment_intent.amount_capturable_updated": PaymentFact.AUTHORIZED,
    "checkout.session.expired": PaymentFact.CANCELED,
}


@dataclass(frozen=True)
class ReconcileOutcome:
    status: str
    event_type: str
    event_id: Optional[str] = None
    booking_id: Optional[str] = None
    message: Optional[str] = None


def event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    data = event.get("data") or {}
    obj = data.get("object") if isinstance(data, dict) else None
    return obj if isinstance(obj, dict) else {}


def dedup_token(event: Dict[str, Any]) -> str:
    """``type:objectId:objectStatus``; identifies an event without relying on its id."""
    obj = event_object(event)
    object_status = obj.get("status") or obj.get("payment_status") or ""
    return f"{event.get('type', '')}:{obj.get('id', '')}:{object_status}"


def map_event_fact(event_type: str, obj: Dict[str, Any]) -> Optional[PaymentFact]:
    if event_type == "checkout.session.completed":
        return PaymentFact.CAPTURED if obj.get("payment_status") == "paid" else None
    return EVENT_FACTS.get(event_type)


def _candidate_references(event_type: str, obj: Dict[str, Any]) -> List[str]:
    references = [obj.get("id")]
    if event_type.startswith("checkout.session."):
        references.append(obj.get("payment_intent"))
    return [ref for ref in references if isinstance(ref, str) and ref]


class WebhookReconciler(BaseService):
    """Idempotent, monotonic application of payment events."""

    def __init__(self, db: Session, payment_orchestrator: Optional[PaymentOrchestrator] = None):
        super().__init__(db)
        self.payments = payment_orchestrator or PaymentOrchestrator(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.webhook_repository = RepositoryFactory.create_webhook_event_repository(db)
        self.state_machine = BookingStateMachine(db, self.booking_repository)

    @BaseService.measure_operation("apply_webhook_event")
    def apply_event(self, payload: bytes, signature: Optional[str]) -> ReconcileOutcome:
        """
        Verify, deduplicate and apply one webhook delivery.

        Returns:
            ReconcileOutcome; ``rejected`` for bad signatures (nothing
            recorded) and amount mismatches (recorded), ``duplicate`` for
            replays, ``ignored`` for event types or references this engine
            does not own, ``processed`` otherwise.

        Raises:
            SQLAlchemyError / RepositoryException: transient storage failures,
                so the processor retries the delivery
        """
        try:
            event = self.payments.construct_event(payload, signature)
        except WebhookSignatureException as e:
            self.logger.warning(f"Rejected webhook delivery: {e.message}")
            return ReconcileOutcome(OUTCOME_REJECTED, "unknown", message=e.message)

        event_type = str(event.get("type") or "unknown")
        event_id = event.get("id") if isinstance(event.get("id"), str) else None
        token = dedup_token(event)

        try:
            with self.webhook_repository.transaction():
                return self._process(event, event_type, event_id, token)
        except IntegrityError:
            # A concurrent delivery of the same event committed its ledger row first
            self.logger.info(f"Concurrent duplicate webhook {event_id or token}")
            return ReconcileOutcome(
                OUTCOME_DUPLICATE, event_type, event_id, message="Event already processed"
            )

    def _process(
        self, event: Dict[str, Any], event_type: str, event_id: Optional[str], token: str
    ) -> ReconcileOutcome:
        previous = self.webhook_repository.find_processed(
            WEBHOOK_SOURCE, event_id=event_id, idempotency_key=token
        )
        if previous is not None:
            self.logger.info(f"Duplicate webhook {event_id or token} ({previous.status})")
            return ReconcileOutcome(
                OUTCOME_DUPLICATE,
                event_type,
                event_id,
                booking_id=previous.related_entity_id,
                message="Event already processed",
            )

        obj = event_object(event)
        fact = map_event_fact(event_type, obj)
        if fact is None:
            return self._record(
                event,
                event_type,
                event_id,
                token,
                OUTCOME_IGNORED,
                message=f"Unhandled event type: {event_type}",
            )

        match = self._find_booking(event_type, obj)
        if match is None:
            self.logger.warning(
                f"No booking for {event_type} reference {obj.get('id')}",
                extra={"event_id": event_id, "event_type": event_type},
            )
            return self._record(
                event,
                event_type,
                event_id,
                token,
                OUTCOME_IGNORED,
                message="No booking matches this payment reference",
            )
        booking, field = match

        try:
            self._verify_amount(booking, field, event_type, obj)
        except MetadataMismatchException as e:
            self.logger.error(
                f"Webhook {event_id or token} disagrees with booking {booking.id}: {e.message}",
                extra={"details": e.details},
            )
            return self._record(
                event,
                event_type,
                event_id,
                token,
                OUTCOME_REJECTED,
                booking_id=booking.id,
                message=e.message,
                error=e.message,
            )

        changed = self.state_machine.reconcile(booking, fact, field)
        message = (
            f"Booking {booking.id} updated ({fact.value})"
            if changed
            else f"Booking {booking.id} already {booking.status}; no change"
        )
        self.log_operation(
            "webhook_applied",
            event_id=event_id,
            event_type=event_type,
            booking_id=booking.id,
            fact=fact.value,
            changed=changed,
        )
        return self._record(
            event,
            event_type,
            event_id,
            token,
            OUTCOME_PROCESSED,
            booking_id=booking.id,
            message=message,
        )

    def _record(
        self,
        event: Dict[str, Any],
        event_type: str,
        event_id: Optional[str],
        token: str,
        outcome: str,
        *,
        booking_id: Optional[str] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ReconcileOutcome:
        ledger_status = {
            OUTCOME_PROCESSED: WebhookEventStatus.PROCESSED,
            OUTCOME_IGNORED: WebhookEventStatus.IGNORED,
            OUTCOME_REJECTED: WebhookEventStatus.REJECTED,
        }[outcome]
        self.webhook_repository.record(
            source=WEBHOOK_SOURCE,
            event_id=event_id,
            event_type=event_type,
            idempotency_key=token,
            payload=event,
            status=ledger_status.value,
            related_entity_type="booking" if booking_id else None,
            related_entity_id=booking_id,
            processing_error=error,
        )
        return ReconcileOutcome(outcome, event_type, event_id, booking_id, message)

    def _find_booking(
        self, event_type: str, obj: Dict[str, Any]
    ) -> Optional[Tuple[Booking, str]]:
        for reference in _candidate_references(event_type, obj):
            match = self.booking_repository.get_by_payment_reference(reference)
            if match is not None:
                return match
        return None

    @staticmethod
    def _verify_amount(
        booking: Booking, field: str, event_type: str, obj: Dict[str, Any]
    ) -> None:
        amount_key = "amount_total" if event_type.startswith("checkout.session.") else "amount"
        amount = obj.get(amount_key)
        expected = expected_amount_cents(booking, field)
        details = {"booking_id": booking.id, "expected_cents": expected, "actual_cents": amount}
        if amount is not None and amount != expected:
            raise MetadataMismatchException(
                "Payment amount does not match the booking", details=details
            )

        currency = obj.get("currency")
        if currency and str(currency).lower() != (booking.currency or "").lower():
            raise MetadataMismatchException(
                "Payment currency does not match the booking",
                details={
                    "booking_id": booking.id,
                    "expected": booking.currency,
                    "actual": currency,
                },
            )

        metadata = obj.get("metadata") or {}
        claimed = metadata.get("booking_id") if isinstance(metadata, dict) else None
        if claimed and claimed != booking.id:
            raise MetadataMismatchException(
                "Payment metadata references a different booking",
                details={"booking_id": booking.id, "metadata_booking_id": claimed},
            )
