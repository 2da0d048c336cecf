# backend/booking_engine/services/booking_service.py
"""
Booking Service

Business logic for the booking lifecycle: request, accept, decline, cancel,
pay the remainder (two-step flow) and on-demand payment sync.

Every mutating operation follows the same 3-phase pattern so no database
transaction is held open across a network call to Stripe:

- Phase 1: read/validate inside a short transaction
- Phase 2: Stripe calls, no transaction
- Phase 3: re-fetch and write inside a short transaction (compare-and-set)

The remote and local state machines are kept consistent by ordering: a hold
is only captured after the slot is known to be ours, and any hold created
for an attempt that loses its slot is canceled before the conflict is
reported.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from ..core.config import Settings, settings
from ..core.exceptions import (
    BookingConflictException,
    ContactProviderException,
    DomainException,
    InvalidBookingStateException,
    MetadataMismatchException,
    NotFoundException,
    PaymentExpiredException,
    PaymentProviderException,
    RepositoryException,
    ServiceException,
    ValidationException,
)
from ..models.booking import (
    COMMITTED_BOOKING_STATUSES,
    Booking,
    BookingFlowType,
    BookingStatus,
    DepositStatus,
    FinalStatus,
    PaymentStatus,
)
from ..repositories import RepositoryFactory
from ..schemas.booking import BookingRequestCreate
from .base import BaseService
from .booking_request_resolver import BookingRequestResolver, ResolvedBookingRequest
from .booking_state_machine import BookingStateMachine, PaymentFact, expected_amount_cents
from .conflict_checker import (
    PROVIDER_CONFLICT_MESSAGE,
    ConflictChecker,
    build_slot_details,
    is_conflict_error,
)
from .fee_calculator import (
    AnyFeePolicy,
    FeeQuote,
    GrossUpFeePolicy,
    build_fee_policy,
    validate_platform_net,
)
from .payment_orchestrator import (
    PI_CANCELED,
    PI_REQUIRES_CAPTURE,
    PI_SUCCEEDED,
    PaymentOrchestrator,
    PaymentStatusSnapshot,
    authorization_release_key,
    booking_cancel_key,
    booking_capture_key,
    booking_final_key,
    booking_request_key,
)

logger = logging.getLogger(__name__)

VALID_ROLES = ("customer", "provider")


@dataclass
class BookingRequestResult:
    booking: Booking
    client_secret: Optional[str]
    replayed: bool = False


@dataclass(frozen=True)
class _RequestContext:
    customer_id: str
    resolved: ResolvedBookingRequest
    request_key: str
    quote: FeeQuote
    charge_cents: int
    flow: str
    destination_account_id: Optional[str]


class BookingService(BaseService):
    """
    Service layer for booking operations.

    Owns the transactions; the state machine and repositories only flush.
    """

    def __init__(
        self,
        db: Session,
        payment_orchestrator: Optional[PaymentOrchestrator] = None,
        fee_policy: Optional[AnyFeePolicy] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        super().__init__(db)
        self.config = config or settings
        self.repository = RepositoryFactory.create_booking_repository(db)
        self.payout_account_repository = (
            RepositoryFactory.create_provider_payout_account_repository(db)
        )
        self.payment_customer_repository = RepositoryFactory.create_payment_customer_repository(db)
        self.conflict_checker = ConflictChecker(db, self.repository)
        self.state_machine = BookingStateMachine(db, self.repository)
        self.request_resolver = BookingRequestResolver(db, clock=clock)
        self.payments = payment_orchestrator or PaymentOrchestrator(db)
        self.fee_policy = fee_policy or build_fee_policy(self.config)

    # Helpers

    def _load(self, booking_id: str) -> Booking:
        booking = self.repository.get_fresh(booking_id)
        if not booking:
            raise NotFoundException("Booking not found", code="booking_not_found")
        return booking

    def _release_authorization(self, reference: str, idempotency_key: str) -> None:
        """Cancel a hold on a failure path; the original error is what the caller reports."""
        try:
            self.payments.cancel(reference, idempotency_key)
        except PaymentProviderException as e:
            self.logger.error(
                f"Failed to release authorization {reference}; it will lapse on its own: {e.message}",
                extra={"payment_reference": reference, "idempotency_key": idempotency_key},
            )

    def quote_fee(self, price_cents: int) -> Tuple[FeeQuote, Optional[int]]:
        """Fee breakdown under the configured policy, plus platform net for gross-up."""
        quote = self.fee_policy.quote(price_cents)
        if isinstance(self.fee_policy, GrossUpFeePolicy):
            return quote, validate_platform_net(quote, self.fee_policy).platform_net_cents
        return quote, None

    # Request

    @BaseService.measure_operation("create_booking_request")
    def create_booking_request(
        self, customer_id: str, data: BookingRequestCreate
    ) -> BookingRequestResult:
        """
        Create a pending booking backed by a payment authorization.

        Single-step bookings hold the full total; two-step bookings hold only
        the deposit (the platform fee) and charge the service price later.

        Raises:
            NotFoundException: unknown catalog service
            ValidationException: invalid interval/price, amount too small,
                review-mode cap, provider not payable, request closed
            BookingConflictException: the slot is taken
            PaymentProviderException: Stripe refused the authorization
        """
        # ========== PHASE 1: Resolve and validate (quick transaction) ==========
        with self.transaction():
            resolved = self.request_resolver.resolve(data)
            if resolved.provider_id == customer_id:
                raise ValidationException("You cannot book yourself", code="self_booking")

            request_key = booking_request_key(
                customer_id,
                resolved.provider_id,
                resolved.booking_date,
                resolved.start_time,
                resolved.end_time,
            )
            existing = self.repository.get_active_by_request_key(customer_id, request_key)
            if existing is None:
                ctx = self._build_request_context(customer_id, resolved, request_key)
                self.conflict_checker.ensure_slot_available(
                    resolved.provider_id,
                    resolved.booking_date,
                    resolved.start_time,
                    resolved.end_time,
                )

        if existing is not None:
            return self._replay_request(existing)

        # ========== PHASE 2: Stripe calls (NO transaction) ==========
        self._ensure_provider_payable(ctx)
        two_step = ctx.flow == BookingFlowType.TWO_STEP.value
        customer_reference = self._resolve_payment_customer(customer_id) if two_step else None
        auth = self.payments.authorize(
            ctx.charge_cents,
            self.config.payment_currency,
            request_key,
            self._authorization_metadata(ctx),
            destination_account_id=ctx.destination_account_id,
            application_fee_cents=ctx.quote.platform_fee_cents,
            save_payment_method=two_step,
            customer_reference=customer_reference,
        )
        if auth.status == PI_CANCELED:
            raise ValidationException(
                "This booking request was already closed. Please submit a new request.",
                code="request_closed",
                details={"request_key": request_key},
            )

        # ========== PHASE 3: Authoritative check + insert ==========
        booking, replayed = self._persist_request(ctx, auth.reference, auth.status)
        if replayed:
            if booking.payment_intent_id != auth.reference:
                # The earlier attempt owns a different hold; this one is surplus
                self._release_authorization(
                    auth.reference, authorization_release_key(auth.reference)
                )
            return self._replay_request(booking)
        self.log_operation(
            "booking_requested",
            booking_id=booking.id,
            provider_id=booking.provider_id,
            amount_cents=ctx.charge_cents,
            payment_reference=auth.reference,
        )
        return BookingRequestResult(booking, client_secret=auth.client_secret)

    def _replay_request(self, booking: Booking) -> BookingRequestResult:
        """
        Answer a repeated request with the booking it already created.

        The client secret is fetched again while the booking is pending, so a
        client that lost the first response can still confirm the card.
        """
        self.logger.info(f"Replaying booking request {booking.request_key} -> {booking.id}")
        client_secret = None
        if booking.payment_intent_id and booking.status == BookingStatus.PENDING.value:
            client_secret = self.payments.retrieve_status(booking.payment_intent_id).client_secret
        return BookingRequestResult(booking, client_secret=client_secret, replayed=True)

    def _build_request_context(
        self, customer_id: str, resolved: ResolvedBookingRequest, request_key: str
    ) -> _RequestContext:
        quote = self.fee_policy.quote(resolved.price_cents)
        if isinstance(self.fee_policy, GrossUpFeePolicy):
            validate_platform_net(quote, self.fee_policy)

        if quote.total_cents < self.config.payment_minimum_charge_cents:
            raise ValidationException(
                f"Amount must be at least {self.config.payment_minimum_charge_cents} cents",
                code="amount_too_small",
                details={"total_cents": quote.total_cents},
            )

        flow = self.config.booking_flow
        charge_cents = (
            quote.platform_fee_cents
            if flow == BookingFlowType.TWO_STEP.value
            else quote.total_cents
        )
        if self.config.review_mode and charge_cents > self.config.review_mode_max_charge_cents:
            raise ValidationException(
                "Review mode is enabled. Maximum charge is "
                f"{self.config.review_mode_max_charge_cents} cents",
                code="review_mode_limit",
                details={
                    "charge_cents": charge_cents,
                    "max_charge_cents": self.config.review_mode_max_charge_cents,
                },
            )

        return _RequestContext(
            customer_id=customer_id,
            resolved=resolved,
            request_key=request_key,
            quote=quote,
            charge_cents=charge_cents,
            flow=flow,
            destination_account_id=self.payout_account_repository.get_stripe_account_id(
                resolved.provider_id
            ),
        )

    def _resolve_payment_customer(self, customer_id: str) -> str:
        """Stripe Customer the deposit saves its card onto; created on first use."""
        with self.transaction():
            existing = self.payment_customer_repository.get_stripe_customer_id(customer_id)
        if existing:
            return existing

        stripe_customer_id = self.payments.create_customer(customer_id)
        try:
            with self.payment_customer_repository.transaction():
                self.payment_customer_repository.create(
                    customer_id=customer_id, stripe_customer_id=stripe_customer_id
                )
        except IntegrityError:
            # A concurrent request stored the customer first
            with self.transaction():
                winner = self.payment_customer_repository.get_stripe_customer_id(customer_id)
            if winner is None:
                raise
            return winner
        return stripe_customer_id

    def _ensure_provider_payable(self, ctx: _RequestContext) -> None:
        if not self.config.require_provider_payout_account:
            return
        account_id = ctx.destination_account_id
        if not account_id or not self.payments.is_account_ready(account_id):
            raise ValidationException(
                "This provider cannot accept payments yet",
                code="provider_not_payable",
                details={"provider_id": ctx.resolved.provider_id},
            )

    @staticmethod
    def _authorization_metadata(ctx: _RequestContext) -> Dict[str, Any]:
        resolved = ctx.resolved
        return {
            "request_key": ctx.request_key,
            "customer_id": ctx.customer_id,
            "provider_id": resolved.provider_id,
            "service_id": resolved.service_id or "",
            "booking_date": resolved.booking_date.isoformat(),
            "start_time": resolved.start_time.strftime("%H:%M"),
            "end_time": resolved.end_time.strftime("%H:%M"),
            "service_price_cents": ctx.quote.service_price_cents,
            "platform_fee_cents": ctx.quote.platform_fee_cents,
            "total_cents": ctx.quote.total_cents,
            "flow": ctx.flow,
        }

    def _persist_request(
        self, ctx: _RequestContext, reference: str, processor_status: str
    ) -> Tuple[Booking, bool]:
        resolved = ctx.resolved
        slot = build_slot_details(
            resolved.provider_id, resolved.booking_date, resolved.start_time, resolved.end_time
        )
        two_step = ctx.flow == BookingFlowType.TWO_STEP.value
        try:
            with self.repository.transaction():
                self.conflict_checker.begin_authoritative_check()
                existing = self.repository.get_active_by_request_key(
                    ctx.customer_id, ctx.request_key
                )
                if existing:
                    return existing, True
                self.conflict_checker.authoritative_check(
                    resolved.provider_id,
                    resolved.booking_date,
                    resolved.start_time,
                    resolved.end_time,
                )
                booking = self.repository.create(
                    customer_id=ctx.customer_id,
                    provider_id=resolved.provider_id,
                    service_id=resolved.service_id,
                    booking_date=resolved.booking_date,
                    start_time=resolved.start_time,
                    end_time=resolved.end_time,
                    service_price_cents=ctx.quote.service_price_cents,
                    platform_fee_cents=ctx.quote.platform_fee_cents,
                    amount_total_cents=ctx.quote.total_cents,
                    currency=self.config.payment_currency,
                    flow=ctx.flow,
                    status=BookingStatus.PENDING.value,
                    payment_status=(
                        PaymentStatus.AUTHORIZED.value
                        if processor_status == PI_REQUIRES_CAPTURE
                        else PaymentStatus.NONE.value
                    ),
                    deposit_status=DepositStatus.UNPAID.value if two_step else None,
                    final_status=FinalStatus.NOT_STARTED.value if two_step else None,
                    payment_intent_id=reference,
                    request_key=ctx.request_key,
                )
            return booking, False
        except Exception as exc:
            if isinstance(exc, IntegrityError):
                winner = self._find_request_winner(reference)
                if winner is not None:
                    # A concurrent identical request inserted first and owns the hold
                    return winner, True
            self._release_authorization(reference, authorization_release_key(reference))
            if isinstance(exc, DomainException):
                raise
            storage_error = exc.__cause__ if isinstance(exc, RepositoryException) else exc
            if storage_error is not None and is_conflict_error(storage_error):
                raise BookingConflictException(PROVIDER_CONFLICT_MESSAGE, details=slot) from exc
            self.logger.error(f"Failed to persist booking request: {str(exc)}")
            raise ServiceException("Failed to create booking") from exc

    def _find_request_winner(self, reference: str) -> Optional[Booking]:
        try:
            return self.repository.find_one_by(payment_intent_id=reference)
        except RepositoryException as e:
            self.logger.error(f"Could not look up the owner of {reference}: {str(e)}")
            return None

    # Provider actions

    @BaseService.measure_operation("accept_booking")
    def accept_booking(self, booking_id: str, provider_id: str) -> Booking:
        """
        Provider accepts a pending booking and the hold is captured.

        Raises:
            NotFoundException / ForbiddenException / InvalidBookingStateException
            BookingConflictException: an overlapping booking was accepted or
                confirmed first; this booking is declined and its hold released
            PaymentExpiredException: the hold lapsed; the booking is expired
            PaymentProviderException: capture failed; the booking is unchanged
        """
        # ========== PHASE 1: Authoritative read/validate (SERIALIZABLE) ==========
        try:
            with self.repository.transaction():
                self.conflict_checker.begin_authoritative_check()
                booking = self._load(booking_id)
                self.state_machine.ensure_participant(booking, provider_id, "provider")
                self.state_machine.ensure_pending(booking, "accept")
                if booking.payment_status != PaymentStatus.AUTHORIZED.value:
                    raise ValidationException(
                        "The customer has not completed payment authorization yet",
                        code="payment_not_authorized",
                        details={
                            "booking_id": booking.id,
                            "payment_status": booking.payment_status,
                        },
                    )
                reference = booking.payment_intent_id
                slot = booking.slot()
                conflicts = self.conflict_checker.check_booking_conflicts(
                    booking.provider_id,
                    booking.booking_date,
                    booking.start_time,
                    booking.end_time,
                    exclude_booking_id=booking.id,
                    statuses=COMMITTED_BOOKING_STATUSES,
                )
        except (RepositoryException, DBAPIError) as exc:
            storage_error = exc.__cause__ if isinstance(exc, RepositoryException) else exc
            if storage_error is not None and is_conflict_error(storage_error):
                raise BookingConflictException(
                    PROVIDER_CONFLICT_MESSAGE, details={"booking_id": booking_id}
                ) from exc
            raise ServiceException("Failed to load booking") from exc

        if conflicts:
            self._release_lost_slot(booking_id, reference, slot, conflicts)

        # ========== PHASE 2: Capture (NO transaction) ==========
        try:
            capture = self.payments.capture(reference, booking_capture_key(booking_id))
        except PaymentExpiredException:
            with self.transaction():
                self.state_machine.expire(self._load(booking_id))
            raise PaymentExpiredException(booking_id)

        # ========== PHASE 3: Write (quick transaction) ==========
        target = (
            BookingStatus.ACCEPTED.value if booking.is_two_step else BookingStatus.CONFIRMED.value
        )
        try:
            with self.transaction():
                self.state_machine.accept(self._load(booking_id))
        except InvalidBookingStateException:
            # A webhook may already have applied the same capture
            with self.transaction():
                current = self._load(booking_id)
            if current.status != target:
                raise
        self.log_operation(
            "booking_accepted",
            booking_id=booking_id,
            amount_received=capture.amount_received,
            payment_reference=reference,
        )
        with self.transaction():
            return self._load(booking_id)

    def _release_lost_slot(
        self,
        booking_id: str,
        reference: Optional[str],
        slot: Dict[str, Any],
        conflicts: List[Dict[str, Any]],
    ) -> None:
        """Cancel the hold, decline the booking, then report the conflict."""
        self.logger.warning(
            f"Booking {booking_id} lost its slot to {[c['booking_id'] for c in conflicts]}"
        )
        if reference:
            self.payments.cancel(reference, booking_cancel_key(booking_id))
        with self.transaction():
            self.state_machine.conflict_release(self._load(booking_id))
        details = dict(slot)
        details["booking_id"] = booking_id
        details["conflicting_booking_ids"] = [c["booking_id"] for c in conflicts]
        raise BookingConflictException(PROVIDER_CONFLICT_MESSAGE, details=details)

    @BaseService.measure_operation("decline_booking")
    def decline_booking(
        self, booking_id: str, provider_id: str, reason: Optional[str] = None
    ) -> Booking:
        """Provider declines a pending booking; the hold is released."""
        with self.transaction():
            booking = self._load(booking_id)
            self.state_machine.ensure_participant(booking, provider_id, "provider")
            self.state_machine.ensure_pending(booking, "decline")
            reference = booking.payment_intent_id

        if reference:
            self.payments.cancel(reference, booking_cancel_key(booking_id))

        with self.transaction():
            self.state_machine.decline(self._load(booking_id), reason)
        self.log_operation("booking_declined", booking_id=booking_id, reason=reason)
        with self.transaction():
            return self._load(booking_id)

    # Customer actions

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self, booking_id: str, customer_id: str, reason: Optional[str] = None
    ) -> Booking:
        """
        Customer withdraws a pending booking.

        Confirmed (or accepted) bookings cannot be cancelled here; the
        customer is told to contact the provider and nothing changes.
        """
        with self.transaction():
            booking = self._load(booking_id)
            self.state_machine.ensure_participant(booking, customer_id, "customer")
            if booking.status in (BookingStatus.CONFIRMED.value, BookingStatus.ACCEPTED.value):
                raise ContactProviderException(booking.id, booking.status)
            self.state_machine.ensure_pending(booking, "cancel")
            reference = booking.payment_intent_id

        if reference:
            self.payments.cancel(reference, booking_cancel_key(booking_id))

        with self.transaction():
            self.state_machine.cancel(self._load(booking_id), reason)
        self.log_operation("booking_cancelled", booking_id=booking_id, reason=reason)
        with self.transaction():
            return self._load(booking_id)

    @BaseService.measure_operation("pay_remaining")
    def pay_remaining(self, booking_id: str, customer_id: str) -> Booking:
        """
        Two-step flow: charge the service price after the provider accepted.

        The card saved with the deposit is charged off-session with the key
        ``booking-final:{id}``, so a retried call never charges twice. After a
        failed charge the next attempt uses a fresh key, since Stripe would
        otherwise replay the failure.
        """
        with self.transaction():
            booking = self._load(booking_id)
            self.state_machine.ensure_participant(booking, customer_id, "customer")
            self.state_machine.ensure_two_step(booking)
            if booking.status != BookingStatus.ACCEPTED.value:
                raise InvalidBookingStateException(
                    booking.id, booking.status, "pay_remaining", "accepted"
                )
            deposit_reference = booking.payment_intent_id
            price_cents = int(booking.service_price_cents)
            currency = booking.currency
            failed_attempts = int(booking.final_payment_attempts or 0)
            destination = self.payout_account_repository.get_stripe_account_id(
                booking.provider_id
            )
            stored_customer = self.payment_customer_repository.get_stripe_customer_id(
                booking.customer_id
            )
            metadata = {
                "booking_id": booking.id,
                "customer_id": booking.customer_id,
                "provider_id": booking.provider_id,
                "payment_kind": "final",
            }

        saved = self.payments.payment_method_of(deposit_reference)
        try:
            result = self.payments.charge(
                price_cents,
                currency,
                booking_final_key(booking_id, failed_attempts),
                metadata,
                payment_method_id=saved.get("payment_method"),
                customer_reference=saved.get("customer") or stored_customer,
                destination_account_id=destination,
            )
        except PaymentProviderException:
            with self.transaction():
                self.state_machine.mark_final_failed(self._load(booking_id))
            raise

        try:
            with self.transaction():
                self.state_machine.pay_remaining(self._load(booking_id), result.reference)
        except InvalidBookingStateException:
            with self.transaction():
                current = self._load(booking_id)
            if current.status != BookingStatus.CONFIRMED.value:
                raise
        self.log_operation(
            "booking_final_paid", booking_id=booking_id, payment_reference=result.reference
        )
        with self.transaction():
            return self._load(booking_id)

    # Sync

    @BaseService.measure_operation("sync_payment_status")
    def sync_payment_status(self, booking_id: str, actor_id: str) -> Booking:
        """
        Ask Stripe for the payment state and apply it like a webhook would.

        This is the only path through which a client's claim that "payment
        succeeded" changes a booking.
        """
        with self.transaction():
            booking = self._load(booking_id)
            self.state_machine.ensure_involved(booking, actor_id)
            field = "payment_intent_id"
            if booking.is_two_step and booking.final_payment_intent_id:
                field = "final_payment_intent_id"
            reference = getattr(booking, field)
            if not reference:
                return booking

        snapshot = self.payments.retrieve_status(reference)

        with self.transaction():
            booking = self._load(booking_id)
            expected = expected_amount_cents(booking, field)
            if snapshot.amount_cents is not None and snapshot.amount_cents != expected:
                raise MetadataMismatchException(
                    "Payment amount does not match the booking",
                    details={
                        "booking_id": booking.id,
                        "expected_cents": expected,
                        "actual_cents": snapshot.amount_cents,
                    },
                )
            self._apply_snapshot(booking, snapshot, field)
        with self.transaction():
            return self._load(booking_id)

    def _apply_snapshot(
        self, booking: Booking, snapshot: PaymentStatusSnapshot, field: str
    ) -> bool:
        if snapshot.is_expired and booking.status == BookingStatus.PENDING.value:
            return self.state_machine.expire(booking)
        fact = {
            PI_SUCCEEDED: PaymentFact.CAPTURED,
            PI_REQUIRES_CAPTURE: PaymentFact.AUTHORIZED,
            PI_CANCELED: PaymentFact.CANCELED,
        }.get(snapshot.status)
        if fact is None:
            self.logger.info(
                f"Payment {snapshot.reference} is {snapshot.status}; nothing to apply"
            )
            return False
        return self.state_machine.reconcile(booking, fact, field)

    # Reads

    def get_booking(self, booking_id: str, actor_id: str) -> Booking:
        with self.transaction():
            booking = self._load(booking_id)
            self.state_machine.ensure_involved(booking, actor_id)
            return booking

    def list_bookings(
        self,
        actor_id: str,
        role: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> List[Booking]:
        if role not in VALID_ROLES:
            raise ValidationException(
                f"role must be one of {list(VALID_ROLES)}", code="invalid_role"
            )
        if status and status not in {s.value for s in BookingStatus}:
            raise ValidationException(f"Unknown booking status '{status}'", code="invalid_status")
        with self.transaction():
            return self.repository.list_for_actor(actor_id, role, status, skip, limit)
