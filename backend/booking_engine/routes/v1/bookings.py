# backend/booking_engine/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService.

Endpoints:
    GET /fee-quote - Fee breakdown for a service price
    GET / - List the caller's bookings (as customer or provider)
    POST / - Request a booking (authorizes payment)
    GET /{booking_id} - Booking details
    POST /{booking_id}/accept - Provider accepts (captures payment)
    POST /{booking_id}/decline - Provider declines (releases payment)
    POST /{booking_id}/cancel - Customer cancels a pending booking
    POST /{booking_id}/pay-remaining - Customer pays the remainder (two-step flow)
    POST /{booking_id}/payment-status/sync - Re-read payment state from Stripe
"""

import asyncio
import logging
from typing import Literal, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import get_booking_service, get_current_actor
from ...core.exceptions import DomainException
from ...schemas.booking import (
    BookingCancel,
    BookingCreateResponse,
    BookingDecline,
    BookingListResponse,
    BookingRequestCreate,
    BookingResponse,
)
from ...schemas.payment import FeeQuoteResponse
from ...services.booking_service import BookingService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _booking_id_path() -> Path:
    return Path(
        ...,
        description="Booking ULID",
        pattern=ULID_PATH_PATTERN,
        examples=["01HF4G12ABCDEF3456789XYZAB"],
    )


# ============================================================================
# SECTION 1: Static routes (no path parameters)
# ============================================================================


@router.get("/fee-quote", response_model=FeeQuoteResponse)
async def get_fee_quote(
    price_cents: int = Query(..., ge=0, description="Service price in cents"),
    booking_service: BookingService = Depends(get_booking_service),
) -> FeeQuoteResponse:
    """Quote the platform fee for a price under the configured policy."""
    try:
        quote, platform_net = booking_service.quote_fee(price_cents)
    except DomainException as e:
        handle_domain_exception(e)
    return FeeQuoteResponse(
        policy=booking_service.fee_policy.name,
        service_price_cents=quote.service_price_cents,
        platform_fee_cents=quote.platform_fee_cents,
        total_cents=quote.total_cents,
        provider_payout_cents=quote.provider_payout_cents,
        platform_net_cents=platform_net,
    )


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    role: Literal["customer", "provider"] = Query("customer"),
    status_filter: Optional[str] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingListResponse:
    """List bookings where the caller is the customer or the provider."""
    try:
        bookings = await asyncio.to_thread(
            booking_service.list_bookings,
            actor_id,
            role,
            status=status_filter,
            skip=skip,
            limit=limit,
        )
    except DomainException as e:
        handle_domain_exception(e)
    items = [BookingResponse.model_validate(b) for b in bookings]
    return BookingListResponse(items=items, total=len(items), role=role)


@router.post(
    "",
    response_model=BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"description": "Time slot conflict"}},
)
async def create_booking_request(
    booking_data: BookingRequestCreate = Body(...),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingCreateResponse:
    """
    Request a booking.

    Authorizes the payment (a hold, nothing is charged yet) and creates a
    pending booking. Replaying the same request returns the same booking.
    """
    try:
        result = await asyncio.to_thread(
            booking_service.create_booking_request, actor_id, booking_data
        )
    except DomainException as e:
        handle_domain_exception(e)
    return BookingCreateResponse(
        booking=BookingResponse.model_validate(result.booking),
        client_secret=result.client_secret,
    )


# ============================================================================
# SECTION 2: Booking routes (path parameter)
# ============================================================================


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
async def get_booking(
    booking_id: str = _booking_id_path(),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = await asyncio.to_thread(booking_service.get_booking, booking_id, actor_id)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/accept",
    response_model=BookingResponse,
    responses={
        404: {"description": "Booking not found"},
        409: {"description": "Time slot conflict"},
        502: {"description": "Payment processor error"},
    },
)
async def accept_booking(
    booking_id: str = _booking_id_path(),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Provider accepts a pending booking; the payment is captured."""
    try:
        booking = await asyncio.to_thread(booking_service.accept_booking, booking_id, actor_id)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/decline",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
async def decline_booking(
    booking_id: str = _booking_id_path(),
    decline_data: Optional[BookingDecline] = Body(None),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Provider declines a pending booking; the authorization is released."""
    reason = decline_data.reason if decline_data else None
    try:
        booking = await asyncio.to_thread(
            booking_service.decline_booking, booking_id, actor_id, reason
        )
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
async def cancel_booking(
    booking_id: str = _booking_id_path(),
    cancel_data: Optional[BookingCancel] = Body(None),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Cancel a booking."""
    reason = cancel_data.reason if cancel_data else None
    try:
        booking = await asyncio.to_thread(
            booking_service.cancel_booking, booking_id, actor_id, reason
        )
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/pay-remaining",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}, 502: {"description": "Charge failed"}},
)
async def pay_remaining(
    booking_id: str = _booking_id_path(),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Two-step flow: charge the service price once the provider has accepted."""
    try:
        booking = await asyncio.to_thread(booking_service.pay_remaining, booking_id, actor_id)
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.model_validate(booking)


@router.post(
    "/{booking_id}/payment-status/sync",
    response_model=BookingResponse,
    responses={404: {"description": "Booking not found"}},
)
async def sync_payment_status(
    booking_id: str = _booking_id_path(),
    actor_id: str = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """Re-read the payment state from Stripe and apply it to the booking."""
    try:
        booking = await asyncio.to_thread(
            booking_service.sync_payment_status, booking_id, actor_id
        )
    except DomainException as e:
        handle_domain_exception(e)
    return BookingResponse.model_validate(booking)
