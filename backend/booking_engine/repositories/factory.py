# backend/booking_engine/repositories/factory.py
"""
Repository Factory

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from sqlalchemy.orm import Session

from .booking_repository import BookingRepository
from .payment_customer_repository import PaymentCustomerRepository
from .service_repository import ProviderPayoutAccountRepository, ServiceRepository
from .webhook_event_repository import WebhookEventRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_service_repository(db: Session) -> ServiceRepository:
        return ServiceRepository(db)

    @staticmethod
    def create_provider_payout_account_repository(db: Session) -> ProviderPayoutAccountRepository:
        return ProviderPayoutAccountRepository(db)

    @staticmethod
    def create_webhook_event_repository(db: Session) -> WebhookEventRepository:
        return WebhookEventRepository(db)

    @staticmethod
    def create_payment_customer_repository(db: Session) -> PaymentCustomerRepository:
        return PaymentCustomerRepository(db)
