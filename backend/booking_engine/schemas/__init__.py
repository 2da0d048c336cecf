from .booking import (
    BookingCancel,
    BookingCreateResponse,
    BookingDecline,
    BookingListResponse,
    BookingRequestCreate,
    BookingResponse,
)
from .payment import FeeQuoteResponse, WebhookResponse

__all__ = [
    "BookingCancel",
    "BookingCreateResponse",
    "BookingDecline",
    "BookingListResponse",
    "BookingRequestCreate",
    "BookingResponse",
    "FeeQuoteResponse",
    "WebhookResponse",
]
