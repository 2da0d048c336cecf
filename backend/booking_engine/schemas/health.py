"""Health check response models."""

from ._strict_base import StrictModel


class HealthResponse(StrictModel):
    status: str
    service: str
    version: str
    environment: str
    booking_flow: str
    fee_policy: str
    timestamp: str
