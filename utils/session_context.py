"""Explicit session identity and feature flags for the authenticated client"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Union

from utils.data_sanitizer import mask_token_safe

logger = logging.getLogger(__name__)

SESSION_EXPIRED_NOTICE = "Session expired. Please sign in again."


def normalize_scopes(raw: Union[str, Iterable[str], None]) -> FrozenSet[str]:
    """Accept a space/comma separated string or a list of scopes"""
    if not raw:
        return frozenset()
    if isinstance(raw, str):
        return frozenset(part for part in re.split(r"[\s,]+", raw) if part)
    return frozenset(str(part) for part in raw if part)


@dataclass
class SessionContext:
    """
    Who is calling and which features are enabled.

    Passed to the API client explicitly; nothing reads it from module globals.
    clear() is the session reset performed after a 401.
    """
    auth_token: Optional[str] = None
    user_id: Optional[str] = None
    scopes: FrozenSet[str] = field(default_factory=frozenset)
    features: FrozenSet[str] = field(default_factory=frozenset)
    notice: Optional[str] = None

    @classmethod
    def from_user(cls, auth_token: str, user: Dict, features: Iterable[str] = ()) -> "SessionContext":
        scopes = set()
        for key in ("scopes", "api_scopes", "scope", "permissions"):
            scopes |= normalize_scopes(user.get(key))
        return cls(
            auth_token=auth_token,
            user_id=str(user["id"]) if user.get("id") is not None else None,
            scopes=frozenset(scopes),
            features=frozenset(features),
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self.auth_token)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def feature_enabled(self, name: str) -> bool:
        return name in self.features

    def auth_headers(self) -> Dict[str, str]:
        if not self.auth_token:
            return {}
        return {"Authorization": f"Bearer {self.auth_token}"}

    def clear(self, notice: Optional[str] = SESSION_EXPIRED_NOTICE):
        if self.auth_token:
            logger.info(f"🔐 SESSION_RESET: clearing session {mask_token_safe(self.auth_token)}")
        self.auth_token = None
        self.user_id = None
        self.scopes = frozenset()
        self.notice = notice
