# backend/booking_engine/api/dependencies/auth.py
"""
Caller identity.

Tokens are verified by the upstream auth gateway, which forwards the
authenticated user id in ``X-Actor-Id``. The engine only needs that id to
decide whether the caller is the booking's customer or provider.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-Actor-Id"
MAX_ACTOR_ID_LENGTH = 64


def get_current_actor(x_actor_id: Optional[str] = Header(None, alias=ACTOR_HEADER)) -> str:
    """Return the calling actor's id or fail with 401."""
    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Not authenticated", "code": "not_authenticated", "details": {}},
        )
    if len(actor_id) > MAX_ACTOR_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid actor id", "code": "invalid_actor", "details": {}},
        )
    return actor_id
