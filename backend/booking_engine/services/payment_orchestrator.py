# backend/booking_engine/services/payment_orchestrator.py
"""
Payment Orchestrator

Wraps the Stripe PaymentIntent API behind the handful of operations the
booking engine needs. The remote processor is treated as an opaque state
machine; every mutating call carries an idempotency key derived from
business identifiers so a retried request lands on the same remote object.

Key Features:
- Manual-capture authorizations (destination charges when the provider has
  a connected account, with the platform fee as the application fee)
- Distinct error kinds for expired authorizations and processor rejections
- Cancel is idempotent: an already-canceled intent is a success
- Webhook signature verification against every configured secret
"""

from dataclasses import dataclass
from datetime import date, time
import json
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session
import stripe

from ..core.config import settings
from ..core.exceptions import (
    PaymentExpiredException,
    PaymentProviderException,
    ServiceException,
    ValidationException,
    WebhookSignatureException,
)
from ..core.payment_keys import PaymentKeyConfig, get_payment_keys
from .base import BaseService

logger = logging.getLogger(__name__)

# Stripe error codes with engine-level meaning
CHARGE_EXPIRED_FOR_CAPTURE = "charge_expired_for_capture"
UNEXPECTED_STATE = "payment_intent_unexpected_state"

# Stripe PaymentIntent statuses
PI_REQUIRES_CAPTURE = "requires_capture"
PI_SUCCEEDED = "succeeded"
PI_CANCELED = "canceled"
PI_REQUIRES_PAYMENT_METHOD = "requires_payment_method"


def booking_request_key(
    customer_id: str, provider_id: str, booking_date: date, start_time: time, end_time: time
) -> str:
    """Idempotency key for the authorization created by a booking request."""
    return (
        f"booking-request:{customer_id}:{provider_id}:{booking_date.isoformat()}:"
        f"{start_time.strftime('%H:%M')}-{end_time.strftime('%H:%M')}"
    )


def booking_capture_key(booking_id: str) -> str:
    return f"booking-capture:{booking_id}"


def booking_cancel_key(booking_id: str) -> str:
    return f"booking-cancel:{booking_id}"


def booking_final_key(booking_id: str, failed_attempts: int = 0) -> str:
    """Remainder charge key; a new key per retry after a failed charge."""
    if failed_attempts:
        return f"booking-final:{booking_id}:retry-{failed_attempts}"
    return f"booking-final:{booking_id}"


def payment_customer_key(customer_id: str) -> str:
    return f"payment-customer:{customer_id}"


def authorization_release_key(reference: str) -> str:
    """Cancel key for an authorization that never became a booking."""
    return f"booking-release:{reference}"


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object or a plain mapping."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


@dataclass(frozen=True)
class AuthorizationResult:
    reference: str
    client_secret: Optional[str]
    status: str
    amount_cents: int


@dataclass(frozen=True)
class CaptureResult:
    reference: str
    status: str
    amount_received: Optional[int]


@dataclass(frozen=True)
class PaymentStatusSnapshot:
    reference: str
    status: str
    amount_cents: Optional[int]
    currency: Optional[str]
    cancellation_reason: Optional[str] = None
    client_secret: Optional[str] = None

    @property
    def is_captured(self) -> bool:
        return self.status == PI_SUCCEEDED

    @property
    def is_authorized(self) -> bool:
        return self.status == PI_REQUIRES_CAPTURE

    @property
    def is_canceled(self) -> bool:
        return self.status == PI_CANCELED

    @property
    def is_expired(self) -> bool:
        return self.status == PI_CANCELED and self.cancellation_reason == "automatic"


class PaymentOrchestrator(BaseService):
    """
    Idempotent facade over the Stripe PaymentIntent API.

    Holds no database state of its own; the session is only accepted so the
    orchestrator composes with the other services.
    """

    def __init__(self, db: Optional[Session] = None, keys: Optional[PaymentKeyConfig] = None):
        super().__init__(db)
        self.keys = keys or get_payment_keys()
        self.currency = settings.payment_currency
        self.allowed_currencies = tuple(settings.payment_allowed_currencies)
        self.minimum_charge_cents = settings.payment_minimum_charge_cents

        self.stripe_configured = False
        if self.keys.secret_key:
            stripe.api_key = self.keys.secret_key
            stripe.max_network_retries = settings.stripe_max_network_retries
            self.stripe_configured = True
            self.logger.info(f"Stripe configured in {self.keys.mode} mode")
        else:
            self.logger.warning("Stripe secret key not configured - payment calls will fail")

    def _check_stripe_configured(self) -> None:
        if not self.stripe_configured:
            raise ServiceException(
                "Stripe service not configured. Please check the Stripe secret key settings."
            )

    def _log_provider_error(
        self,
        operation: str,
        error: stripe.StripeError,
        *,
        idempotency_key: Optional[str],
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> None:
        self.logger.error(
            f"Stripe error during {operation}: {str(error)}",
            extra={
                "operation": operation,
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
                "payment_reference": reference,
                "stripe_code": getattr(error, "code", None),
                "http_status": getattr(error, "http_status", None),
            },
        )

    def validate_amount(self, amount_cents: int, currency: str) -> None:
        """Reject charges the processor would refuse, before any remote call."""
        if currency.lower() not in self.allowed_currencies:
            raise ValidationException(
                f"Currency '{currency}' is not supported",
                code="unsupported_currency",
                details={"currency": currency, "allowed": list(self.allowed_currencies)},
            )
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationException(
                "Amount must be a positive number of cents",
                code="invalid_amount",
                details={"amount_cents": amount_cents},
            )
        if amount_cents < self.minimum_charge_cents:
            raise ValidationException(
                f"Amount must be at least {self.minimum_charge_cents} cents",
                code="amount_too_small",
                details={"amount_cents": amount_cents, "minimum_cents": self.minimum_charge_cents},
            )

    @BaseService.measure_operation("stripe_authorize")
    def authorize(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, Any],
        *,
        destination_account_id: Optional[str] = None,
        application_fee_cents: Optional[int] = None,
        save_payment_method: bool = False,
        customer_reference: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Create a manual-capture PaymentIntent (a hold, not a charge).

        Returns:
            AuthorizationResult with the intent id and the client secret the
            customer's device uses to confirm the card.

        Raises:
            ValidationException: currency/amount rejected locally
            PaymentProviderException: Stripe refused the request
        """
        self.validate_amount(amount_cents, currency)
        self._check_stripe_configured()

        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "capture_method": "manual",
            "automatic_payment_methods": {"enabled": True},
            "metadata": {key: str(value) for key, value in metadata.items()},
        }
        if destination_account_id:
            params["transfer_data"] = {"destination": destination_account_id}
            if application_fee_cents is not None:
                params["application_fee_amount"] = application_fee_cents
        if save_payment_method:
            # Stripe saves the card only onto an attached Customer
            if not customer_reference:
                raise ServiceException("Saving a payment method requires a Stripe customer")
            params["setup_future_usage"] = "off_session"
        if customer_reference:
            params["customer"] = customer_reference

        try:
            pi = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            self._log_provider_error(
                "authorize",
                e,
                idempotency_key=idempotency_key,
                amount_cents=amount_cents,
                currency=currency,
            )
            raise PaymentProviderException(
                f"Failed to authorize payment: {str(e)}",
                provider_code=getattr(e, "code", None),
            )

        self.log_operation(
            "stripe_authorize",
            payment_reference=_get(pi, "id"),
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
        )
        return AuthorizationResult(
            reference=_get(pi, "id"),
            client_secret=_get(pi, "client_secret"),
            status=_get(pi, "status", ""),
            amount_cents=int(_get(pi, "amount", amount_cents)),
        )

    @BaseService.measure_operation("stripe_create_customer")
    def create_customer(self, customer_id: str) -> str:
        """
        Create the Stripe Customer a two-step booking saves its card onto.

        Returns:
            The Stripe Customer id
        """
        self._check_stripe_configured()
        idempotency_key = payment_customer_key(customer_id)
        try:
            customer = stripe.Customer.create(
                metadata={"customer_id": customer_id}, idempotency_key=idempotency_key
            )
        except stripe.StripeError as e:
            self._log_provider_error("create_customer", e, idempotency_key=idempotency_key)
            raise PaymentProviderException(
                f"Failed to create payment customer: {str(e)}",
                provider_code=getattr(e, "code", None),
            )
        self.logger.info(f"Created Stripe customer {_get(customer, 'id')} for {customer_id}")
        return _get(customer, "id")

    @BaseService.measure_operation("stripe_capture")
    def capture(self, reference: str, idempotency_key: str) -> CaptureResult:
        """
        Capture a held authorization.

        Raises:
            PaymentExpiredException: the hold lapsed (or Stripe auto-canceled it)
            PaymentProviderException: any other processor rejection
        """
        self._check_stripe_configured()
        try:
            pi = stripe.PaymentIntent.capture(reference, idempotency_key=idempotency_key)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            self._log_provider_error(
                "capture", e, idempotency_key=idempotency_key, reference=reference
            )
            if code == CHARGE_EXPIRED_FOR_CAPTURE:
                raise PaymentExpiredException()
            if code == UNEXPECTED_STATE:
                snapshot = self.retrieve_status(reference)
                if snapshot.is_captured:
                    self.logger.info(f"PaymentIntent {reference} was already captured")
                    return CaptureResult(reference, snapshot.status, snapshot.amount_cents)
                if snapshot.is_expired:
                    raise PaymentExpiredException()
            raise PaymentProviderException(
                f"Failed to capture payment: {str(e)}", provider_code=code
            )

        amount_received = _get(pi, "amount_received")
        if amount_received is None:
            amount_received = _get(pi, "amount")
        return CaptureResult(
            reference=_get(pi, "id", reference),
            status=_get(pi, "status", PI_SUCCEEDED),
            amount_received=amount_received,
        )

    @BaseService.measure_operation("stripe_cancel")
    def cancel(self, reference: str, idempotency_key: str) -> str:
        """
        Release a hold. Calling it on an already-canceled intent succeeds.

        Returns:
            The intent's status after the call (``canceled``).
        """
        self._check_stripe_configured()
        try:
            pi = stripe.PaymentIntent.cancel(reference, idempotency_key=idempotency_key)
            return _get(pi, "status", PI_CANCELED)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            if code == UNEXPECTED_STATE:
                snapshot = self.retrieve_status(reference)
                if snapshot.is_canceled:
                    self.logger.info(f"PaymentIntent {reference} already canceled")
                    return snapshot.status
            self._log_provider_error(
                "cancel", e, idempotency_key=idempotency_key, reference=reference
            )
            raise PaymentProviderException(
                f"Failed to cancel payment intent: {str(e)}", provider_code=code
            )

    def retrieve_status(self, reference: str) -> PaymentStatusSnapshot:
        """Ask the processor for the current state of an intent."""
        self._check_stripe_configured()
        try:
            pi = stripe.PaymentIntent.retrieve(reference)
        except stripe.StripeError as e:
            self._log_provider_error("retrieve", e, idempotency_key=None, reference=reference)
            raise PaymentProviderException(
                f"Failed to retrieve payment intent: {str(e)}",
                provider_code=getattr(e, "code", None),
            )
        return PaymentStatusSnapshot(
            reference=_get(pi, "id", reference),
            status=_get(pi, "status", ""),
            amount_cents=_get(pi, "amount"),
            currency=_get(pi, "currency"),
            cancellation_reason=_get(pi, "cancellation_reason"),
            client_secret=_get(pi, "client_secret"),
        )

    @BaseService.measure_operation("stripe_charge")
    def charge(
        self,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, Any],
        *,
        payment_method_id: Optional[str] = None,
        customer_reference: Optional[str] = None,
        destination_account_id: Optional[str] = None,
    ) -> CaptureResult:
        """
        Authorize and capture in one step (two-step flow remainder).

        The intent is confirmed off-session with the payment method saved at
        request time; anything short of ``succeeded`` is a processor failure.
        """
        self.validate_amount(amount_cents, currency)
        self._check_stripe_configured()
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "capture_method": "automatic",
            "confirm": True,
            "off_session": True,
            "metadata": {key: str(value) for key, value in metadata.items()},
        }
        if payment_method_id:
            params["payment_method"] = payment_method_id
        if customer_reference:
            params["customer"] = customer_reference
        if destination_account_id:
            params["transfer_data"] = {"destination": destination_account_id}

        try:
            pi = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            self._log_provider_error(
                "charge",
                e,
                idempotency_key=idempotency_key,
                amount_cents=amount_cents,
                currency=currency,
            )
            raise PaymentProviderException(
                f"Failed to charge payment: {str(e)}", provider_code=getattr(e, "code", None)
            )

        status = _get(pi, "status", "")
        if status != PI_SUCCEEDED:
            self.logger.error(
                f"Charge for {amount_cents} {currency} did not complete: status={status}",
                extra={"idempotency_key": idempotency_key, "payment_reference": _get(pi, "id")},
            )
            raise PaymentProviderException(
                "Payment did not complete", provider_code=status or None
            )
        return CaptureResult(_get(pi, "id"), status, _get(pi, "amount_received", amount_cents))

    def payment_method_of(self, reference: str) -> Dict[str, Optional[str]]:
        """Saved payment method and customer behind an earlier intent."""
        self._check_stripe_configured()
        try:
            pi = stripe.PaymentIntent.retrieve(reference)
        except stripe.StripeError as e:
            self._log_provider_error("retrieve", e, idempotency_key=None, reference=reference)
            raise PaymentProviderException(
                f"Failed to retrieve payment intent: {str(e)}",
                provider_code=getattr(e, "code", None),
            )
        return {
            "payment_method": _get(pi, "payment_method"),
            "customer": _get(pi, "customer"),
        }

    def is_account_ready(self, account_id: str) -> bool:
        """Connected account can take charges and receive payouts."""
        self._check_stripe_configured()
        try:
            account = stripe.Account.retrieve(account_id)
        except stripe.StripeError as e:
            self._log_provider_error("account_retrieve", e, idempotency_key=None)
            raise PaymentProviderException(
                f"Failed to retrieve connected account: {str(e)}",
                provider_code=getattr(e, "code", None),
            )
        capabilities = _get(account, "capabilities") or {}
        transfers = _get(capabilities, "transfers")
        return bool(
            _get(account, "charges_enabled")
            and _get(account, "payouts_enabled")
            and transfers != "inactive"
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook delivery and return the parsed event.

        Each configured webhook secret is tried in order.

        Raises:
            WebhookSignatureException: missing/invalid signature or unparseable body
            ServiceException: no webhook secret configured
        """
        if not signature:
            raise WebhookSignatureException("Missing stripe-signature header")
        secrets: Iterable[str] = self.keys.webhook_secrets
        if not secrets:
            raise ServiceException("Webhook secret not configured")

        for secret in secrets:
            try:
                stripe.Webhook.construct_event(payload, signature, secret)
                break
            except stripe.SignatureVerificationError:
                continue
            except ValueError as e:
                raise WebhookSignatureException(f"Invalid webhook payload: {str(e)}")
        else:
            self.logger.warning("Invalid Stripe webhook signature")
            raise WebhookSignatureException()

        try:
            event = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise WebhookSignatureException(f"Invalid webhook payload: {str(e)}")
        if not isinstance(event, dict):
            raise WebhookSignatureException("Invalid webhook payload: not an object")
        return event
