# backend/booking_engine/repositories/service_repository.py
"""Read-only access to catalog services and provider payout accounts."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models.provider_payout_account import ProviderPayoutAccount
from ..models.service import Service
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ServiceRepository(BaseRepository[Service]):
    def __init__(self, db: Session):
        super().__init__(db, Service)


class ProviderPayoutAccountRepository(BaseRepository[ProviderPayoutAccount]):
    def __init__(self, db: Session):
        super().__init__(db, ProviderPayoutAccount)

    def get_stripe_account_id(self, provider_id: str) -> Optional[str]:
        account = self.get_by_id(provider_id)
        return account.stripe_account_id if account else None
