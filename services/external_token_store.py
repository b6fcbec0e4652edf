"""
External Token Store
Holds the bearer secret received through a one-time handoff link until the
link turns terminal. Records are keyed by a SHA-256 fingerprint so logs and
cache keys never carry the secret itself.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select

from database import SessionLocal, managed_session
from models import ExternalTokenHandoff
from utils.data_sanitizer import mask_token_safe

logger = logging.getLogger(__name__)


def fingerprint(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


class ExternalTokenStore:
    """Client-side handoff storage for external proof token secrets"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def save(self, secret: str, escrow_id: Optional[str] = None, milestone_idx: Optional[int] = None) -> str:
        """Store a secret (replacing any earlier copy of it); returns its fingerprint"""
        if not secret:
            raise ValueError("Cannot store an empty token")
        digest = fingerprint(secret)
        with managed_session(self.session_factory) as session:
            session.execute(delete(ExternalTokenHandoff).where(ExternalTokenHandoff.fingerprint == digest))
            session.add(ExternalTokenHandoff(
                fingerprint=digest,
                secret=secret,
                escrow_id=str(escrow_id) if escrow_id is not None else None,
                milestone_idx=milestone_idx,
                stored_at=datetime.now(timezone.utc).replace(tzinfo=None),
            ))
        logger.info(f"🔐 EXTERNAL_TOKEN_STORED: {mask_token_safe(secret)}")
        return digest

    def current(self) -> Optional[str]:
        """Most recently stored secret"""
        with managed_session(self.session_factory) as session:
            record = session.execute(
                select(ExternalTokenHandoff).order_by(ExternalTokenHandoff.id.desc()).limit(1)
            ).scalar_one_or_none()
            return record.secret if record else None

    def contains(self, secret: str) -> bool:
        with managed_session(self.session_factory) as session:
            record = session.execute(
                select(ExternalTokenHandoff.id).where(ExternalTokenHandoff.fingerprint == fingerprint(secret))
            ).first()
            return record is not None

    def purge(self, secret: str) -> bool:
        """Forget a secret once the link is terminal"""
        with managed_session(self.session_factory) as session:
            result = session.execute(
                delete(ExternalTokenHandoff).where(ExternalTokenHandoff.fingerprint == fingerprint(secret))
            )
            removed = result.rowcount > 0
        if removed:
            logger.info(f"🔐 EXTERNAL_TOKEN_PURGED: {mask_token_safe(secret)}")
        return removed

    def clear(self) -> int:
        with managed_session(self.session_factory) as session:
            result = session.execute(delete(ExternalTokenHandoff))
            return result.rowcount
