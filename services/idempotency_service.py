"""
Idempotency Key Service
Keeps one stable Idempotency-Key per logical user intent

A key is created the first time an intent is attempted, reused for every
automatic retry of that intent, and cleared once the intent succeeds or fails
for good. A fresh user attempt after clearing gets a new key.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import delete, select

from config import Config
from database import SessionLocal, managed_session
from models import IdempotencyKey

logger = logging.getLogger(__name__)


class IntentKind(Enum):
    """Mutations that carry an Idempotency-Key"""
    ESCROW_CREATE = "escrow_create"
    ESCROW_DEPOSIT = "escrow_deposit"
    FUNDING_SESSION = "funding_session"
    PAYMENT_EXECUTION = "payment_execution"
    PROOF_SUBMISSION = "proof_submission"


def intent_for(kind: IntentKind, entity_id) -> str:
    """Stable intent name, e.g. 'payment_execution:P-17'"""
    return f"{kind.value}:{entity_id}"


def _utcnow() -> datetime:
    # Stored naive (UTC) so SQLite round-trips compare cleanly
    return datetime.now(timezone.utc).replace(tzinfo=None)


class IdempotencyService:
    """Local-store backed intent -> key mapping with a TTL"""

    def __init__(
        self,
        session_factory=None,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory or SessionLocal
        self.ttl = timedelta(seconds=ttl_seconds or Config.IDEMPOTENCY_KEY_TTL_SECONDS)
        self._clock = clock

    def get(self, intent: str) -> Optional[str]:
        """Stored key for an intent, or None when absent or expired"""
        with managed_session(self.session_factory) as session:
            record = session.execute(
                select(IdempotencyKey).where(IdempotencyKey.intent == intent)
            ).scalar_one_or_none()
            if record is None:
                return None
            if record.expires_at <= self._clock():
                session.delete(record)
                logger.debug(f"Idempotency key for {intent} expired")
                return None
            return record.idempotency_key

    def get_or_create(self, intent: str) -> str:
        """Reuse the intent's key across retries, or mint a new one"""
        existing = self.get(intent)
        if existing:
            return existing

        key = str(uuid.uuid4())
        now = self._clock()
        with managed_session(self.session_factory) as session:
            session.add(IdempotencyKey(
                intent=intent,
                idempotency_key=key,
                created_at=now,
                expires_at=now + self.ttl,
            ))
        logger.info(f"🔑 IDEMPOTENCY_KEY_CREATED: {intent}")
        return key

    def clear(self, intent: str) -> bool:
        with managed_session(self.session_factory) as session:
            result = session.execute(delete(IdempotencyKey).where(IdempotencyKey.intent == intent))
            removed = result.rowcount > 0
        if removed:
            logger.debug(f"Idempotency key for {intent} cleared")
        return removed

    def purge_expired(self) -> int:
        with managed_session(self.session_factory) as session:
            result = session.execute(delete(IdempotencyKey).where(IdempotencyKey.expires_at <= self._clock()))
            purged = result.rowcount
        if purged:
            logger.info(f"🧹 IDEMPOTENCY_PURGE: removed {purged} expired key(s)")
        return purged
