# backend/booking_engine/repositories/payment_customer_repository.py
"""Mapping from booking customers to their Stripe Customer ids."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models.payment_customer import PaymentCustomer
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentCustomerRepository(BaseRepository[PaymentCustomer]):
    def __init__(self, db: Session):
        super().__init__(db, PaymentCustomer)

    def get_stripe_customer_id(self, customer_id: str) -> Optional[str]:
        record = self.get_by_id(customer_id)
        return record.stripe_customer_id if record else None
