"""
Service layer for the booking engine.

Services own transactions and business rules; repositories only flush.
"""

from .base import BaseService
from .booking_service import BookingRequestResult, BookingService
from .booking_state_machine import BookingStateMachine, PaymentFact
from .conflict_checker import ConflictChecker
from .fee_calculator import CappedPercentageFeePolicy, FeeQuote, GrossUpFeePolicy
from .payment_orchestrator import PaymentOrchestrator
from .webhook_reconciler import ReconcileOutcome, WebhookReconciler

__all__ = [
    "BaseService",
    "BookingRequestResult",
    "BookingService",
    "BookingStateMachine",
    "CappedPercentageFeePolicy",
    "ConflictChecker",
    "FeeQuote",
    "GrossUpFeePolicy",
    "PaymentFact",
    "PaymentOrchestrator",
    "ReconcileOutcome",
    "WebhookReconciler",
]
