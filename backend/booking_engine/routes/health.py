"""
Health check endpoint for monitoring and load balancer probes.
"""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter

from ..core.config import settings
from ..schemas.health import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

SERVICE_NAME = "booking-engine"
API_VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Liveness probe; does not touch the database or Stripe."""
    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        version=API_VERSION,
        environment=settings.environment,
        booking_flow=settings.booking_flow,
        fee_policy=settings.booking_fee_policy,
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )
