"""
BookingService single-step lifecycle against SQLite and the Stripe fake.
"""

from datetime import date, time
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from booking_engine.core.exceptions import (
    BookingConflictException,
    ContactProviderException,
    ForbiddenException,
    InvalidBookingStateException,
    MetadataMismatchException,
    NotFoundException,
    PaymentExpiredException,
    PaymentProviderException,
    RepositoryException,
    ServiceException,
    ValidationException,
)
from booking_engine.models import Booking
from booking_engine.repositories.booking_repository import BookingRepository
from booking_engine.schemas.booking import BookingRequestCreate
from booking_engine.services.booking_state_machine import SLOT_UNAVAILABLE_REASON
from tests.conftest import (
    BOOKING_DATE,
    CUSTOMER_ID,
    OTHER_CUSTOMER_ID,
    PROVIDER_ID,
    WEBHOOK_SECRET,
    custom_request,
)
from tests.helpers.webhooks import encode, payment_intent_event, sign_payload


def _created_references(fake_stripe):
    return [params["_id"] for op, _key, params in fake_stripe.calls if op == "create"]


class TestCreateBookingRequest:
    def test_catalog_booking_uses_service_price(
        self, db, booking_service, catalog_service, fake_stripe
    ) -> None:
        data = BookingRequestCreate(
            service_id=catalog_service.id, booking_date=BOOKING_DATE, start_time=time(14, 0)
        )

        result = booking_service.create_booking_request(CUSTOMER_ID, data)

        booking = result.booking
        assert booking.status == "pending"
        assert booking.payment_status == "none"
        assert booking.provider_id == PROVIDER_ID
        assert booking.service_id == catalog_service.id
        assert booking.end_time == time(15, 0)
        assert booking.service_price_cents == 10000
        assert booking.platform_fee_cents == 800
        assert booking.amount_total_cents == 10800
        assert result.client_secret == f"{booking.payment_intent_id}_secret_test"
        assert not result.replayed

        params = fake_stripe.params_of(booking.payment_intent_id)
        assert params["amount"] == 10800
        assert params["capture_method"] == "manual"
        assert params["metadata"]["total_cents"] == "10800"

    def test_custom_booking_fee(self, booking_service, fake_stripe) -> None:
        result = booking_service.create_booking_request(
            CUSTOMER_ID, custom_request(price_cents=5000)
        )

        assert result.booking.platform_fee_cents == 400
        assert result.booking.amount_total_cents == 5400
        assert result.booking.service_id is None

    def test_repeated_request_replays_the_booking(self, db, booking_service, fake_stripe) -> None:
        first = booking_service.create_booking_request(CUSTOMER_ID, custom_request())
        second = booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        assert second.replayed
        assert second.booking.id == first.booking.id
        assert second.client_secret == f"{first.booking.payment_intent_id}_secret_test"
        assert second.client_secret == first.client_secret
        assert fake_stripe.count("create") == 1
        assert db.query(Booking).count() == 1

    def test_request_after_cancel_is_closed(self, db, booking_service, fake_stripe) -> None:
        first = booking_service.create_booking_request(CUSTOMER_ID, custom_request())
        booking_service.cancel_booking(first.booking.id, CUSTOMER_ID)

        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        assert exc_info.value.code == "request_closed"
        assert db.query(Booking).count() == 1

    def test_overlapping_request_is_rejected_before_authorizing(
        self, booking_service, make_booking, fake_stripe
    ) -> None:
        make_booking(customer_id=OTHER_CUSTOMER_ID)

        with pytest.raises(BookingConflictException) as exc_info:
            booking_service.create_booking_request(
                CUSTOMER_ID, custom_request(start_time=time(14, 30), end_time=time(15, 30))
            )

        assert exc_info.value.details["start_time"] == "14:30"
        assert fake_stripe.count("create") == 0

    def test_adjacent_slot_is_free(self, booking_service, make_booking) -> None:
        make_booking(customer_id=OTHER_CUSTOMER_ID)

        result = booking_service.create_booking_request(
            CUSTOMER_ID, custom_request(start_time=time(15, 0), end_time=time(16, 0))
        )

        assert result.booking.status == "pending"

    def test_slot_taken_during_authorization_releases_hold(
        self, db, booking_service, payments, make_booking, fake_stripe
    ) -> None:
        real_authorize = payments.authorize

        def authorize_then_lose_the_slot(*args, **kwargs):
            result = real_authorize(*args, **kwargs)
            make_booking(customer_id=OTHER_CUSTOMER_ID)
            return result

        with patch.object(payments, "authorize", side_effect=authorize_then_lose_the_slot):
            with pytest.raises(BookingConflictException) as exc_info:
                booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        [reference] = _created_references(fake_stripe)
        assert fake_stripe.status_of(reference) == "canceled"
        assert fake_stripe.keys_for("cancel") == [f"booking-release:{reference}"]
        assert len(exc_info.value.details["conflicting_booking_ids"]) == 1
        assert db.query(Booking).filter(Booking.customer_id == CUSTOMER_ID).count() == 0

    @pytest.mark.parametrize(
        "driver_message, expected",
        [
            ("server closed the connection unexpectedly", ServiceException),
            ("could not serialize access due to concurrent update", BookingConflictException),
        ],
    )
    def test_storage_error_during_recheck_releases_hold(
        self, db, booking_service, fake_stripe, driver_message, expected
    ) -> None:
        real_find_overlapping = BookingRepository.find_overlapping
        calls = []

        def fail_on_recheck(self, *args, **kwargs):
            calls.append(args)
            if len(calls) > 1:
                cause = OperationalError("SELECT", {}, Exception(driver_message))
                raise RepositoryException("Failed to check booking overlaps") from cause
            return real_find_overlapping(self, *args, **kwargs)

        with patch.object(
            BookingRepository, "find_overlapping", autospec=True, side_effect=fail_on_recheck
        ):
            with pytest.raises(expected):
                booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        [reference] = _created_references(fake_stripe)
        assert fake_stripe.status_of(reference) == "canceled"
        assert fake_stripe.keys_for("cancel") == [f"booking-release:{reference}"]
        assert db.query(Booking).count() == 0

    def test_insert_failure_releases_hold(self, db, booking_service, fake_stripe) -> None:
        with patch.object(
            BookingRepository,
            "create",
            autospec=True,
            side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")),
        ):
            with pytest.raises(ServiceException):
                booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        [reference] = _created_references(fake_stripe)
        assert fake_stripe.status_of(reference) == "canceled"
        assert db.query(Booking).count() == 0

    def test_declined_card_creates_nothing(self, db, booking_service, fake_stripe) -> None:
        fake_stripe.create_error_code = "card_declined"

        with pytest.raises(PaymentProviderException):
            booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        assert db.query(Booking).count() == 0

    def test_cannot_book_yourself(self, booking_service) -> None:
        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking_request(PROVIDER_ID, custom_request())
        assert exc_info.value.code == "self_booking"

    def test_start_must_be_in_the_future(self, booking_service, fake_stripe) -> None:
        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking_request(
                CUSTOMER_ID, custom_request(booking_date=date(2029, 12, 31))
            )
        assert exc_info.value.code == "start_in_past"
        assert fake_stripe.count("create") == 0

    def test_inactive_service(self, db, booking_service, catalog_service) -> None:
        catalog_service.is_active = False
        db.commit()

        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking_request(
                CUSTOMER_ID,
                BookingRequestCreate(
                    service_id=catalog_service.id, booking_date=BOOKING_DATE, start_time=time(9, 0)
                ),
            )
        assert exc_info.value.code == "service_unavailable"

    def test_unknown_service(self, booking_service) -> None:
        with pytest.raises(NotFoundException) as exc_info:
            booking_service.create_booking_request(
                CUSTOMER_ID,
                BookingRequestCreate(
                    service_id="01HZZZZZZZZZZZZZZZZZZZZZZZ",
                    booking_date=BOOKING_DATE,
                    start_time=time(9, 0),
                ),
            )
        assert exc_info.value.code == "service_not_found"

    def test_minimum_charge(self, service_factory) -> None:
        service = service_factory(payment_minimum_charge_cents=20000)

        with pytest.raises(ValidationException) as exc_info:
            service.create_booking_request(CUSTOMER_ID, custom_request())
        assert exc_info.value.code == "amount_too_small"

    def test_review_mode_caps_the_charge(self, service_factory, fake_stripe) -> None:
        service = service_factory(review_mode=True, review_mode_max_charge_cents=5000)

        with pytest.raises(ValidationException) as exc_info:
            service.create_booking_request(CUSTOMER_ID, custom_request())

        assert exc_info.value.code == "review_mode_limit"
        assert exc_info.value.details["charge_cents"] == 10800
        assert fake_stripe.count("create") == 0


class TestPayoutAccounts:
    def test_destination_charge_when_provider_has_account(
        self, booking_service, payout_account, fake_stripe
    ) -> None:
        result = booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        params = fake_stripe.params_of(result.booking.payment_intent_id)
        assert params["transfer_data"] == {"destination": "acct_provider_carol"}
        assert params["application_fee_amount"] == 800

    def test_provider_without_account_is_not_payable(self, service_factory, fake_stripe) -> None:
        service = service_factory(require_provider_payout_account=True)

        with pytest.raises(ValidationException) as exc_info:
            service.create_booking_request(CUSTOMER_ID, custom_request())

        assert exc_info.value.code == "provider_not_payable"
        assert fake_stripe.count("create") == 0

    def test_required_account_that_is_ready(
        self, service_factory, payout_account, fake_stripe
    ) -> None:
        service = service_factory(require_provider_payout_account=True)

        result = service.create_booking_request(CUSTOMER_ID, custom_request())

        assert result.booking.status == "pending"


class TestAcceptBooking:
    def test_accept_captures_and_confirms(self, db, booking_service, make_booking, fake_stripe):
        booking = make_booking()

        accepted = booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert accepted.status == "confirmed"
        assert accepted.payment_status == "captured"
        assert accepted.confirmed_at is not None
        assert fake_stripe.status_of(booking.payment_intent_id) == "succeeded"
        assert fake_stripe.keys_for("capture") == [f"booking-capture:{booking.id}"]

    def test_conflict_recheck_runs_serializable_before_capture(
        self, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        real_isolation = BookingRepository.use_serializable_isolation

        with patch.object(
            BookingRepository,
            "use_serializable_isolation",
            autospec=True,
            side_effect=real_isolation,
        ) as isolation:
            booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert isolation.call_count == 1
        assert fake_stripe.count("capture") == 1

    def test_serialization_failure_in_recheck_is_a_conflict(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        cause = OperationalError("SELECT", {}, Exception("could not serialize access"))

        def serialization_failure(*args, **kwargs):
            raise RepositoryException("Failed to check booking overlaps") from cause

        with patch.object(
            BookingRepository,
            "find_overlapping",
            autospec=True,
            side_effect=serialization_failure,
        ):
            with pytest.raises(BookingConflictException):
                booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert fake_stripe.count("capture") == 0
        db.refresh(booking)
        assert booking.status == "pending"

    def test_second_accept_is_rejected_without_recapturing(
        self, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        booking_service.accept_booking(booking.id, PROVIDER_ID)

        with pytest.raises(InvalidBookingStateException) as exc_info:
            booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert exc_info.value.message == "Booking is confirmed, not pending"
        assert fake_stripe.count("capture") == 1

    def test_only_the_provider_can_accept(self, booking_service, make_booking, fake_stripe):
        booking = make_booking()

        with pytest.raises(ForbiddenException):
            booking_service.accept_booking(booking.id, CUSTOMER_ID)

        assert fake_stripe.count("capture") == 0

    def test_unknown_booking(self, booking_service) -> None:
        with pytest.raises(NotFoundException) as exc_info:
            booking_service.accept_booking("01HZZZZZZZZZZZZZZZZZZZZZZZ", PROVIDER_ID)
        assert exc_info.value.code == "booking_not_found"

    def test_requires_authorized_payment(self, booking_service, make_booking) -> None:
        booking = make_booking(payment_status="none")

        with pytest.raises(ValidationException) as exc_info:
            booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert exc_info.value.code == "payment_not_authorized"

    def test_overlapping_pending_bookings_only_one_wins(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        first = make_booking()
        second = make_booking(
            customer_id=OTHER_CUSTOMER_ID, start_time=time(14, 30), end_time=time(15, 30)
        )

        booking_service.accept_booking(first.id, PROVIDER_ID)
        with pytest.raises(BookingConflictException) as exc_info:
            booking_service.accept_booking(second.id, PROVIDER_ID)

        assert exc_info.value.details["conflicting_booking_ids"] == [first.id]
        db.refresh(first)
        db.refresh(second)
        assert first.status == "confirmed"
        assert second.status == "declined"
        assert second.payment_status == "canceled"
        assert second.decline_reason == SLOT_UNAVAILABLE_REASON
        assert fake_stripe.status_of(second.payment_intent_id) == "canceled"
        assert fake_stripe.keys_for("capture") == [f"booking-capture:{first.id}"]

    def test_expired_authorization_expires_booking(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        fake_stripe.expire(booking.payment_intent_id)

        with pytest.raises(PaymentExpiredException) as exc_info:
            booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert exc_info.value.details == {"booking_id": booking.id}
        db.refresh(booking)
        assert booking.status == "expired"
        assert booking.payment_status == "failed"

    def test_capture_failure_leaves_booking_untouched(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        fake_stripe.capture_error_code = "processing_error"

        with pytest.raises(PaymentProviderException) as exc_info:
            booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert exc_info.value.status_code == 502
        db.refresh(booking)
        assert booking.status == "pending"
        assert booking.payment_status == "authorized"

    def test_webhook_already_confirmed_counts_as_success(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        real_capture = booking_service.payments.capture

        def capture_and_race_webhook(reference, key):
            result = real_capture(reference, key)
            booking_service.state_machine.accept(booking)
            db.commit()
            return result

        with patch.object(booking_service.payments, "capture", side_effect=capture_and_race_webhook):
            accepted = booking_service.accept_booking(booking.id, PROVIDER_ID)

        assert accepted.status == "confirmed"


class TestDeclineAndCancel:
    def test_decline_releases_hold(self, db, booking_service, make_booking, fake_stripe) -> None:
        booking = make_booking()

        declined = booking_service.decline_booking(booking.id, PROVIDER_ID, "Fully booked")

        assert declined.status == "declined"
        assert declined.decline_reason == "Fully booked"
        assert fake_stripe.status_of(booking.payment_intent_id) == "canceled"
        assert fake_stripe.keys_for("cancel") == [f"booking-cancel:{booking.id}"]

    def test_customer_cannot_decline(self, booking_service, make_booking) -> None:
        booking = make_booking()

        with pytest.raises(ForbiddenException):
            booking_service.decline_booking(booking.id, CUSTOMER_ID)

    def test_decline_confirmed_booking(self, booking_service, make_booking) -> None:
        booking = make_booking()
        booking_service.accept_booking(booking.id, PROVIDER_ID)

        with pytest.raises(InvalidBookingStateException):
            booking_service.decline_booking(booking.id, PROVIDER_ID)

    def test_cancel_pending(self, booking_service, make_booking, fake_stripe) -> None:
        booking = make_booking()

        cancelled = booking_service.cancel_booking(booking.id, CUSTOMER_ID, "Changed plans")

        assert cancelled.status == "cancelled"
        assert cancelled.payment_status == "canceled"
        assert cancelled.cancellation_reason == "Changed plans"
        assert fake_stripe.status_of(booking.payment_intent_id) == "canceled"

    def test_cancel_confirmed_points_to_provider(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking()
        booking_service.accept_booking(booking.id, PROVIDER_ID)

        with pytest.raises(ContactProviderException) as exc_info:
            booking_service.cancel_booking(booking.id, CUSTOMER_ID)

        assert exc_info.value.code == "contact_provider"
        db.refresh(booking)
        assert booking.status == "confirmed"
        assert fake_stripe.status_of(booking.payment_intent_id) == "succeeded"

    def test_provider_cannot_cancel_as_customer(self, booking_service, make_booking) -> None:
        booking = make_booking()

        with pytest.raises(ForbiddenException):
            booking_service.cancel_booking(booking.id, PROVIDER_ID)

    def test_freed_slot_can_be_requested_again(
        self, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking(customer_id=OTHER_CUSTOMER_ID)
        booking_service.decline_booking(booking.id, PROVIDER_ID)

        result = booking_service.create_booking_request(CUSTOMER_ID, custom_request())

        assert result.booking.status == "pending"


class TestSyncPaymentStatus:
    def test_processor_capture_confirms(self, booking_service, make_booking, fake_stripe) -> None:
        booking = make_booking()
        fake_stripe.intents[booking.payment_intent_id]["status"] = "succeeded"

        synced = booking_service.sync_payment_status(booking.id, CUSTOMER_ID)

        assert synced.status == "confirmed"
        assert synced.payment_status == "captured"

    def test_lapsed_hold_expires_booking(self, booking_service, make_booking, fake_stripe):
        booking = make_booking()
        fake_stripe.expire(booking.payment_intent_id)

        synced = booking_service.sync_payment_status(booking.id, PROVIDER_ID)

        assert synced.status == "expired"

    def test_amount_mismatch_changes_nothing(
        self, db, booking_service, make_booking, fake_stripe
    ) -> None:
        booking = make_booking(payment_intent_id=fake_stripe.seed_intent(5000, status="succeeded"))

        with pytest.raises(MetadataMismatchException) as exc_info:
            booking_service.sync_payment_status(booking.id, CUSTOMER_ID)

        assert exc_info.value.details["expected_cents"] == 10800
        db.refresh(booking)
        assert booking.status == "pending"

    def test_strangers_cannot_sync(self, booking_service, make_booking) -> None:
        booking = make_booking()

        with pytest.raises(ForbiddenException):
            booking_service.sync_payment_status(booking.id, "someone_else")


class TestReads:
    def test_get_booking_for_participants_only(self, booking_service, make_booking) -> None:
        booking = make_booking()

        assert booking_service.get_booking(booking.id, CUSTOMER_ID).id == booking.id
        assert booking_service.get_booking(booking.id, PROVIDER_ID).id == booking.id
        with pytest.raises(ForbiddenException):
            booking_service.get_booking(booking.id, OTHER_CUSTOMER_ID)

    def test_list_by_role_and_status(self, booking_service, make_booking) -> None:
        make_booking()
        make_booking(start_time=time(16, 0), end_time=time(17, 0), status="cancelled")
        make_booking(customer_id=OTHER_CUSTOMER_ID, start_time=time(9, 0), end_time=time(10, 0))

        assert len(booking_service.list_bookings(CUSTOMER_ID, "customer")) == 2
        assert len(booking_service.list_bookings(PROVIDER_ID, "provider")) == 3
        cancelled = booking_service.list_bookings(CUSTOMER_ID, "customer", status="cancelled")
        assert [b.status for b in cancelled] == ["cancelled"]

    def test_list_rejects_unknown_status(self, booking_service) -> None:
        with pytest.raises(ValidationException) as exc_info:
            booking_service.list_bookings(CUSTOMER_ID, "customer", status="archived")
        assert exc_info.value.code == "invalid_status"

    def test_list_rejects_unknown_role(self, booking_service) -> None:
        with pytest.raises(ValidationException) as exc_info:
            booking_service.list_bookings(CUSTOMER_ID, "admin")
        assert exc_info.value.code == "invalid_role"

    def test_fee_quote(self, booking_service, service_factory) -> None:
        quote, net = booking_service.quote_fee(10000)
        assert (quote.platform_fee_cents, quote.total_cents, net) == (800, 10800, None)

        gross_up = service_factory(booking_fee_policy="gross_up")
        quote, net = gross_up.quote_fee(5000)
        assert quote.platform_fee_cents == 283
        assert abs(net - 99) <= 1


class TestRequestThroughConfirmation:
    """A request is only authorized once the customer's device confirms the card."""

    def test_sync_after_card_confirmation_enables_accept(
        self, booking_service, fake_stripe
    ) -> None:
        booking = booking_service.create_booking_request(CUSTOMER_ID, custom_request()).booking
        assert booking.payment_status == "none"

        with pytest.raises(ValidationException) as exc_info:
            booking_service.accept_booking(booking.id, PROVIDER_ID)
        assert exc_info.value.code == "payment_not_authorized"

        fake_stripe.confirm_card(booking.payment_intent_id)
        synced = booking_service.sync_payment_status(booking.id, CUSTOMER_ID)
        assert synced.payment_status == "authorized"

        accepted = booking_service.accept_booking(booking.id, PROVIDER_ID)
        assert accepted.status == "confirmed"
        assert accepted.payment_status == "captured"

    def test_authorization_webhook_enables_accept(
        self, booking_service, reconciler, fake_stripe
    ) -> None:
        booking = booking_service.create_booking_request(CUSTOMER_ID, custom_request()).booking
        fake_stripe.confirm_card(booking.payment_intent_id)
        payload = encode(
            payment_intent_event(
                "payment_intent.amount_capturable_updated",
                booking.payment_intent_id,
                amount=booking.amount_total_cents,
                status="requires_capture",
            )
        )

        result = reconciler.apply_event(payload, sign_payload(payload, WEBHOOK_SECRET))

        assert result.status == "processed"
        accepted = booking_service.accept_booking(booking.id, PROVIDER_ID)
        assert accepted.status == "confirmed"
