"""
Database models for the booking engine.

- Booking: the calendar reservation and its payment state
- Service: read-only catalog offering
- ProviderPayoutAccount: connected account used for destination charges
- PaymentCustomer: Stripe Customer holding a card saved for off-session charges
- WebhookEvent: processed-event ledger for webhook deduplication
"""

from .booking import (
    ACTIVE_BOOKING_STATUSES,
    COMMITTED_BOOKING_STATUSES,
    TERMINAL_BOOKING_STATUSES,
    Booking,
    BookingFlowType,
    BookingStatus,
    DepositStatus,
    FinalStatus,
    PaymentStatus,
)
from .payment_customer import PaymentCustomer
from .provider_payout_account import ProviderPayoutAccount
from .service import Service
from .webhook_event import WebhookEvent, WebhookEventStatus

__all__ = [
    "ACTIVE_BOOKING_STATUSES",
    "COMMITTED_BOOKING_STATUSES",
    "TERMINAL_BOOKING_STATUSES",
    "Booking",
    "BookingFlowType",
    "BookingStatus",
    "DepositStatus",
    "FinalStatus",
    "PaymentCustomer",
    "PaymentStatus",
    "ProviderPayoutAccount",
    "Service",
    "WebhookEvent",
    "WebhookEventStatus",
]
