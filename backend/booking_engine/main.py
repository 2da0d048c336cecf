# backend/booking_engine/main.py
"""
FastAPI application for the booking engine.

Startup resolves the Stripe key configuration once; a missing or mismatched
key fails the process before it accepts traffic.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI

from .core.config import settings
from .core.payment_keys import get_payment_keys
from .errors import register_error_handlers
from .routes import health, metrics, stripe_webhooks
from .routes.v1 import bookings as bookings_v1

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)

API_TITLE = "Booking Engine API"
API_DESCRIPTION = "Booking requests, provider decisions and Stripe payment reconciliation"
API_VERSION = health.API_VERSION


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup/shutdown."""
    logger.info("Booking engine starting up...")
    logger.info(f"Environment: {settings.environment}")
    keys = get_payment_keys()
    logger.info(
        f"Payments: mode={keys.mode} flow={settings.booking_flow} "
        f"fee_policy={settings.booking_fee_policy} webhook_secrets={len(keys.webhook_secrets)}"
    )
    if not keys.secret_key:
        logger.warning("No Stripe secret key configured - payment endpoints will fail")
    yield
    logger.info("Booking engine shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    app.include_router(api_v1)
    app.include_router(stripe_webhooks.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    return app


app = create_app()
