# backend/booking_engine/schemas/payment.py
"""Payment-facing response models: fee quotes and webhook acknowledgements."""

from typing import Optional

from pydantic import Field

from ._strict_base import StrictModel


class FeeQuoteResponse(StrictModel):
    """Fee breakdown for a service price under the configured policy."""

    policy: str = Field(..., description="Fee policy that produced the quote")
    service_price_cents: int
    platform_fee_cents: int
    total_cents: int = Field(..., description="What the customer is charged")
    provider_payout_cents: int = Field(..., description="What the provider receives")
    platform_net_cents: Optional[int] = Field(
        None, description="Platform net after processor fees (gross-up policy only)"
    )


class WebhookResponse(StrictModel):
    """Response for webhook processing."""

    status: str = Field(
        ..., description="Processing status (processed, duplicate, ignored, rejected)"
    )
    event_type: str = Field(..., description="Stripe event type")
    message: Optional[str] = Field(None, description="Additional information")
