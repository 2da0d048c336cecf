"""Repository helpers for the webhook event ledger."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.webhook_event import WebhookEvent
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class WebhookEventRepository(BaseRepository[WebhookEvent]):
    """Repository for webhook ledger queries."""

    def __init__(self, db: Session) -> None:
        super().__init__(db, WebhookEvent)

    def find_processed(
        self, source: str, *, event_id: str | None, idempotency_key: str
    ) -> WebhookEvent | None:
        """Ledger row matching either the event id or the derived token."""
        criteria = [WebhookEvent.idempotency_key == idempotency_key]
        if event_id:
            criteria.append(WebhookEvent.event_id == event_id)
        try:
            return (
                self.db.query(WebhookEvent)
                .filter(WebhookEvent.source == source, or_(*criteria))
                .first()
            )
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load webhook ledger entry: %s", str(exc))
            raise RepositoryException("Failed to load webhook ledger entry") from exc

    def record(
        self,
        *,
        source: str,
        event_id: str | None,
        event_type: str,
        idempotency_key: str,
        payload: dict[str, Any],
        status: str,
        related_entity_type: str | None = None,
        related_entity_id: str | None = None,
        processing_error: str | None = None,
    ) -> WebhookEvent:
        """Insert a ledger row; a concurrent duplicate surfaces as IntegrityError at flush."""
        return self.create(
            source=source,
            event_id=event_id,
            event_type=event_type,
            idempotency_key=idempotency_key,
            payload=payload,
            status=status,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            processing_error=processing_error,
            processed_at=datetime.now(timezone.utc),
        )

    def list_for_booking(self, booking_id: str) -> list[WebhookEvent]:
        query = (
            self._build_query()
            .filter(
                WebhookEvent.related_entity_type == "booking",
                WebhookEvent.related_entity_id == booking_id,
            )
            .order_by(WebhookEvent.received_at.asc())
        )
        return self._execute_query(query)
