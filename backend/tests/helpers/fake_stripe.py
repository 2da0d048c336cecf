"""
In-memory stand-in for the parts of the Stripe API the booking engine calls.

PaymentIntents move through the same statuses Stripe uses: a new intent waits
in ``requires_payment_method`` until the customer confirms a card. Replays with
a seen idempotency key return the stored intent instead of creating a new one,
and calls that Stripe would reject raise real ``stripe`` error classes with
the same error codes.
"""

from contextlib import ExitStack, contextmanager
from types import SimpleNamespace
from typing import Any, Dict, Iterator, List, Optional, Tuple
from unittest.mock import patch

import stripe

UNEXPECTED_STATE = "payment_intent_unexpected_state"
RESOURCE_MISSING = "resource_missing"
PARAMETER_MISSING = "parameter_missing"

CANCELABLE_STATUSES = (
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
    "requires_capture",
)


class FakeStripe:
    def __init__(self) -> None:
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Optional[str], Any]] = []
        self._replays: Dict[Tuple[str, str], str] = {}
        self._counter = 0

        # Failure switches
        self.create_error_code: Optional[str] = None
        self.capture_error_code: Optional[str] = None
        self.charge_status = "succeeded"

    # Test setup helpers

    def seed_intent(
        self,
        amount: int,
        *,
        status: str = "requires_capture",
        currency: str = "usd",
        metadata: Optional[Dict[str, str]] = None,
        payment_method: Optional[str] = "pm_card_visa",
        customer: Optional[str] = "cus_test",
    ) -> str:
        self._counter += 1
        intent_id = f"pi_test_{self._counter:04d}"
        self.intents[intent_id] = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": amount,
            "amount_received": amount if status == "succeeded" else 0,
            "currency": currency,
            "status": status,
            "client_secret": f"{intent_id}_secret_test",
            "metadata": dict(metadata or {}),
            "payment_method": payment_method,
            "customer": customer,
            "cancellation_reason": None,
        }
        return intent_id

    def add_account(self, account_id: str, *, ready: bool = True) -> None:
        self.accounts[account_id] = {
            "id": account_id,
            "charges_enabled": ready,
            "payouts_enabled": ready,
            "capabilities": {"transfers": "active" if ready else "inactive"},
        }

    def confirm_card(self, intent_id: str, payment_method: str = "pm_card_visa") -> None:
        """What the customer's device does with the client secret."""
        intent = self.intents[intent_id]
        intent["payment_method"] = payment_method
        intent["status"] = "requires_capture"

    def expire(self, intent_id: str) -> None:
        """What Stripe does to an uncaptured authorization after its window."""
        self.intents[intent_id]["status"] = "canceled"
        self.intents[intent_id]["cancellation_reason"] = "automatic"

    def status_of(self, intent_id: str) -> str:
        return self.intents[intent_id]["status"]

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def keys_for(self, operation: str) -> List[Optional[str]]:
        return [call[1] for call in self.calls if call[0] == operation]

    def params_of(self, intent_id: str) -> Dict[str, Any]:
        for operation, _key, params in self.calls:
            if operation == "create" and params.get("_id") == intent_id:
                return params
        raise KeyError(intent_id)

    # Fake API

    @staticmethod
    def _view(record: Dict[str, Any]) -> SimpleNamespace:
        return SimpleNamespace(**record)

    @staticmethod
    def _invalid(message: str, code: str) -> stripe.InvalidRequestError:
        return stripe.InvalidRequestError(message, None, code=code)

    def _intent(self, intent_id: str) -> Dict[str, Any]:
        if intent_id not in self.intents:
            raise self._invalid(f"No such payment_intent: '{intent_id}'", RESOURCE_MISSING)
        return self.intents[intent_id]

    def _replayed(self, operation: str, key: Optional[str]) -> Optional[SimpleNamespace]:
        if key and (operation, key) in self._replays:
            return self._view(self.intents[self._replays[(operation, key)]])
        return None

    def create(self, idempotency_key: Optional[str] = None, **params: Any) -> SimpleNamespace:
        record = dict(params)
        self.calls.append(("create", idempotency_key, record))
        replay = self._replayed("create", idempotency_key)
        if replay is not None:
            record["_id"] = replay.id
            return replay
        if self.create_error_code:
            raise stripe.CardError("Your card was declined.", None, self.create_error_code)

        confirmed = bool(params.get("confirm"))
        if confirmed and params.get("off_session") and not params.get("customer"):
            raise self._invalid(
                "An off-session payment needs a PaymentMethod attached to a Customer.",
                PARAMETER_MISSING,
            )
        # Unconfirmed intents wait for the customer's device to supply a card
        intent_id = self.seed_intent(
            params["amount"],
            status=self.charge_status if confirmed else "requires_payment_method",
            currency=params.get("currency", "usd"),
            metadata=params.get("metadata"),
            payment_method=params.get("payment_method"),
            customer=params.get("customer"),
        )
        record["_id"] = intent_id
        if idempotency_key:
            self._replays[("create", idempotency_key)] = intent_id
        return self._view(self.intents[intent_id])

    def create_customer(
        self, idempotency_key: Optional[str] = None, **params: Any
    ) -> SimpleNamespace:
        self.calls.append(("create_customer", idempotency_key, params))
        if idempotency_key and ("create_customer", idempotency_key) in self._replays:
            return self._view(self.customers[self._replays[("create_customer", idempotency_key)]])
        customer_id = f"cus_test_{len(self.customers) + 1:04d}"
        self.customers[customer_id] = {
            "id": customer_id,
            "object": "customer",
            "metadata": dict(params.get("metadata") or {}),
        }
        if idempotency_key:
            self._replays[("create_customer", idempotency_key)] = customer_id
        return self._view(self.customers[customer_id])

    def capture(
        self, intent_id: str, idempotency_key: Optional[str] = None, **params: Any
    ) -> SimpleNamespace:
        self.calls.append(("capture", idempotency_key, intent_id))
        replay = self._replayed("capture", idempotency_key)
        if replay is not None:
            return replay
        if self.capture_error_code:
            raise self._invalid("Capture failed", self.capture_error_code)
        intent = self._intent(intent_id)
        if intent["status"] != "requires_capture":
            raise self._invalid(
                f"This PaymentIntent could not be captured because it has a status of "
                f"{intent['status']}.",
                UNEXPECTED_STATE,
            )
        intent["status"] = "succeeded"
        intent["amount_received"] = intent["amount"]
        if idempotency_key:
            self._replays[("capture", idempotency_key)] = intent_id
        return self._view(intent)

    def cancel(
        self, intent_id: str, idempotency_key: Optional[str] = None, **params: Any
    ) -> SimpleNamespace:
        self.calls.append(("cancel", idempotency_key, intent_id))
        replay = self._replayed("cancel", idempotency_key)
        if replay is not None:
            return replay
        intent = self._intent(intent_id)
        if intent["status"] not in CANCELABLE_STATUSES:
            raise self._invalid(
                f"You cannot cancel this PaymentIntent because it has a status of "
                f"{intent['status']}.",
                UNEXPECTED_STATE,
            )
        intent["status"] = "canceled"
        intent["cancellation_reason"] = "requested_by_customer"
        if idempotency_key:
            self._replays[("cancel", idempotency_key)] = intent_id
        return self._view(intent)

    def retrieve(self, intent_id: str, **params: Any) -> SimpleNamespace:
        self.calls.append(("retrieve", None, intent_id))
        return self._view(self._intent(intent_id))

    def retrieve_account(self, account_id: str, **params: Any) -> SimpleNamespace:
        if account_id not in self.accounts:
            raise self._invalid(f"No such account: '{account_id}'", RESOURCE_MISSING)
        return self._view(self.accounts[account_id])

    @contextmanager
    def installed(self) -> Iterator["FakeStripe"]:
        with ExitStack() as stack:
            stack.enter_context(patch("stripe.PaymentIntent.create", side_effect=self.create))
            stack.enter_context(patch("stripe.PaymentIntent.capture", side_effect=self.capture))
            stack.enter_context(patch("stripe.PaymentIntent.cancel", side_effect=self.cancel))
            stack.enter_context(patch("stripe.PaymentIntent.retrieve", side_effect=self.retrieve))
            stack.enter_context(patch("stripe.Account.retrieve", side_effect=self.retrieve_account))
            stack.enter_context(patch("stripe.Customer.create", side_effect=self.create_customer))
            yield self
