"""
Repository layer for the booking engine.

Repositories only flush; services own commits and rollbacks.
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .factory import RepositoryFactory
from .payment_customer_repository import PaymentCustomerRepository
from .service_repository import ProviderPayoutAccountRepository, ServiceRepository
from .webhook_event_repository import WebhookEventRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "PaymentCustomerRepository",
    "ProviderPayoutAccountRepository",
    "RepositoryFactory",
    "ServiceRepository",
    "WebhookEventRepository",
]
