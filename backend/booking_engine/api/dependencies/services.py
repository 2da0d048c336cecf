# backend/booking_engine/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected.
"""

import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from ...core.payment_keys import get_payment_keys
from ...services.booking_service import BookingService
from ...services.payment_orchestrator import PaymentOrchestrator
from ...services.webhook_reconciler import WebhookReconciler
from .database import get_db

logger = logging.getLogger(__name__)


def get_payment_orchestrator(db: Session = Depends(get_db)) -> PaymentOrchestrator:
    """Stripe facade bound to the process-wide key configuration."""
    return PaymentOrchestrator(db, keys=get_payment_keys())


def get_booking_service(
    db: Session = Depends(get_db),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> BookingService:
    """Get BookingService instance with proper dependencies."""
    return BookingService(db, payment_orchestrator=payments)


def get_webhook_reconciler(
    db: Session = Depends(get_db),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> WebhookReconciler:
    return WebhookReconciler(db, payment_orchestrator=payments)
