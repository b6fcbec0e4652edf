"""
Secure Link Issuer
==================

Issuer-side lifecycle of external proof tokens: issuance with local validation,
listing, inspection and idempotent revocation, plus the one-time handoff link
through which a bearer receives the secret.

The secret is returned by the backend exactly once, at issuance. It is held in
an IssuedExternalToken that hands it out a single time and never prints it.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlsplit

from config import Config
from models import (
    EntityKind,
    EscrowSummary,
    ExternalProofToken,
    ExternalProofTokenStatus,
    InvariantViolationError,
    MilestoneStatus,
)
from caching.view_cache import ViewCache
from services.action_authority import Action, ActionAuthority, action_authority
from services.consistency_graph import (
    ConsistencyGraph,
    EntityIds,
    MutationKind,
    ViewKeys,
    consistency_graph,
    freeze_filters,
)
from services.escrow_api_client import EscrowApiClient
from services.external_token_store import ExternalTokenStore
from utils.api_errors import (
    ConflictError,
    GoneError,
    SecretAlreadyRevealedError,
    TokenIssueValidationError,
    TokenTargetMismatchError,
)
from utils.data_sanitizer import data_sanitizer, mask_token_safe
from utils.pagination import Page
from utils.status_ledger import StatusLedger, status_ledger

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
HANDOFF_PARAM = "token"


@dataclass(frozen=True)
class IssueRequest:
    """Parameters of one token issuance"""
    escrow_id: Any
    milestone_idx: int
    expires_in_minutes: int = Config.EXTERNAL_TOKEN_DEFAULT_MINUTES
    max_uploads: int = Config.EXTERNAL_TOKEN_DEFAULT_MAX_UPLOADS
    issued_to_email: Optional[str] = None
    note: Optional[str] = None

    def validate(self):
        """Raise TokenIssueValidationError on the first invalid field"""
        if self.escrow_id is None or str(self.escrow_id).strip() == "":
            raise TokenIssueValidationError("escrow_id", "is required")

        if isinstance(self.milestone_idx, bool) or not isinstance(self.milestone_idx, int):
            raise TokenIssueValidationError("milestone_idx", "must be an integer")
        if self.milestone_idx < 1:
            raise TokenIssueValidationError("milestone_idx", "must be positive")

        minutes = self.expires_in_minutes
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            raise TokenIssueValidationError("expires_in_minutes", "must be an integer number of minutes")
        if not Config.EXTERNAL_TOKEN_MIN_MINUTES <= minutes <= Config.EXTERNAL_TOKEN_MAX_MINUTES:
            raise TokenIssueValidationError(
                "expires_in_minutes",
                f"must be between {Config.EXTERNAL_TOKEN_MIN_MINUTES} and {Config.EXTERNAL_TOKEN_MAX_MINUTES}",
            )

        if isinstance(self.max_uploads, bool) or not isinstance(self.max_uploads, int) or self.max_uploads < 1:
            raise TokenIssueValidationError("max_uploads", "must be an integer >= 1")

        if self.issued_to_email and not EMAIL_PATTERN.match(self.issued_to_email.strip()):
            raise TokenIssueValidationError("issued_to_email", "is not a valid email address")

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "escrow_id": self.escrow_id,
            "milestone_idx": self.milestone_idx,
            "expires_in_minutes": self.expires_in_minutes,
            "max_uploads": self.max_uploads,
        }
        if self.issued_to_email:
            payload["issued_to_email"] = self.issued_to_email.strip()
        if self.note:
            payload["note"] = self.note.strip()
        return payload


class IssuedExternalToken:
    """Freshly issued token: metadata plus a secret that can be read once"""

    def __init__(self, metadata: ExternalProofToken, secret: str):
        self.metadata = metadata
        self._secret: Optional[str] = secret
        self.fingerprint_hint = mask_token_safe(secret)

    @property
    def token_id(self) -> str:
        return self.metadata.token_id

    @property
    def revealed(self) -> bool:
        return self._secret is None

    def reveal(self) -> str:
        """Hand out the secret; any later call raises SecretAlreadyRevealedError"""
        if self._secret is None:
            raise SecretAlreadyRevealedError(f"Secret of token {self.token_id} was already revealed")
        secret, self._secret = self._secret, None
        return secret

    def __repr__(self):
        return (
            f"<IssuedExternalToken(token_id={self.token_id}, status={self.metadata.status.value}, "
            f"secret={self.fingerprint_hint})>"
        )

    __str__ = __repr__


def effective_status(token: ExternalProofToken, now: Optional[datetime] = None) -> ExternalProofTokenStatus:
    """Status after passive expiry and upload-budget exhaustion are applied"""
    if token.status is not ExternalProofTokenStatus.ACTIVE:
        return token.status
    now = now or datetime.now(timezone.utc)
    if token.expires_at is not None and token.expires_at <= now:
        return ExternalProofTokenStatus.EXPIRED
    if token.uploads_used >= token.max_uploads:
        return ExternalProofTokenStatus.USED
    return token.status


# ============================================================================
# HANDOFF
# ============================================================================

def build_handoff_url(secret: str, portal_url: Optional[str] = None) -> str:
    """One-time link carrying the secret; it must be consumed and stripped on arrival"""
    base = (portal_url or Config.EXTERNAL_PORTAL_URL).rstrip("/")
    return f"{base}?{urlencode({HANDOFF_PARAM: secret})}"


def consume_handoff_url(url: str, store: Optional[ExternalTokenStore] = None) -> Tuple[Optional[str], str]:
    """
    Take the secret out of a handoff link.

    Returns (secret, cleaned_url). The cleaned URL no longer carries the secret
    and is the only form that may be rendered, logged or shared. When a store is
    given the secret is kept there for the rest of the session.
    """
    values = parse_qs(urlsplit(url).query).get(HANDOFF_PARAM) or []
    secret = values[0].strip() if values and values[0].strip() else None
    cleaned = data_sanitizer.strip_query_param(url, HANDOFF_PARAM)
    if secret and store is not None:
        store.save(secret)
    if secret:
        logger.info(f"🔐 HANDOFF_CONSUMED: {mask_token_safe(secret)} -> {cleaned}")
    return secret, cleaned


# ============================================================================
# ISSUER
# ============================================================================

class SecureLinkIssuer:
    """Issue, list, inspect and revoke external proof tokens"""

    def __init__(
        self,
        client: EscrowApiClient,
        cache: Optional[ViewCache] = None,
        graph: Optional[ConsistencyGraph] = None,
        authority: Optional[ActionAuthority] = None,
        ledger: Optional[StatusLedger] = None,
    ):
        self.client = client
        self.cache = cache if cache is not None else client.cache
        self.graph = graph or consistency_graph
        self.authority = authority or action_authority
        self.ledger = ledger or status_ledger

    def check_target_status(self, summary: EscrowSummary, milestone_idx: int):
        """Tokens are only issued for an open escrow whose milestone awaits proof"""
        if self.ledger.is_terminal(EntityKind.ESCROW, summary.escrow.status):
            raise TokenIssueValidationError(
                "escrow_id", f"escrow is {summary.escrow.status.value} and no longer accepts proofs"
            )
        milestone = summary.milestone_by_index(milestone_idx)
        if milestone is None:
            raise TokenIssueValidationError("milestone_idx", f"escrow has no milestone {milestone_idx}")
        awaiting = milestone.status is MilestoneStatus.WAITING or (
            milestone.status is MilestoneStatus.REJECTED and self.ledger.rejected_milestone_resubmittable
        )
        if not awaiting:
            raise TokenIssueValidationError(
                "milestone_idx", f"milestone {milestone_idx} is {milestone.status.value} and not awaiting proof"
            )

    async def issue(self, request: IssueRequest, summary: Optional[EscrowSummary] = None) -> IssuedExternalToken:
        """
        Issue a token for one (escrow, milestone) target.

        Local validation runs first; with a summary, the viewer's permission and
        the target's statuses are checked too. Nothing is sent when any check fails.
        """
        request.validate()
        if summary is not None:
            self.authority.require_action(
                summary.context_for(milestone_idx=request.milestone_idx),
                Action.ISSUE_EXTERNAL_TOKEN,
                target=f"escrow {request.escrow_id}",
            )
            self.check_target_status(summary, request.milestone_idx)

        data = await self.client.issue_external_token(request.to_payload())
        secret = data.get("token") if isinstance(data, dict) else None
        if not secret:
            raise InvariantViolationError("Token issuance response did not include the one-time secret")

        metadata = ExternalProofToken.from_payload(data)
        if not metadata.target.matches(request.escrow_id, request.milestone_idx):
            raise TokenTargetMismatchError(
                f"Issued token {metadata.token_id} is bound to escrow {metadata.target.escrow_id} "
                f"milestone {metadata.target.milestone_idx}, not the requested target"
            )

        logger.info(
            f"🔐 EXTERNAL_TOKEN_ISSUED: {metadata.token_id} for escrow {metadata.target.escrow_id} "
            f"milestone {metadata.target.milestone_idx} ({mask_token_safe(secret)})"
        )
        await self._invalidate(MutationKind.EXTERNAL_TOKEN_ISSUE, metadata)
        return IssuedExternalToken(metadata, secret)

    async def list(self, escrow_id, milestone_idx: Optional[int] = None, limit: Optional[int] = None,
                   offset: Optional[int] = None) -> Page[ExternalProofToken]:
        async def load():
            data = await self.client.list_external_tokens(escrow_id, milestone_idx, limit=limit, offset=offset)
            return Page.from_payload(data, ExternalProofToken.from_payload)

        if self.cache is None:
            return await load()
        key = ViewKeys.external_tokens(escrow_id, milestone_idx)
        if limit is not None or offset is not None:
            key = key + (freeze_filters({"limit": limit, "offset": offset}),)
        return await self.cache.fetch(key, load)

    async def get(self, token_id) -> ExternalProofToken:
        async def load():
            return ExternalProofToken.from_payload(await self.client.get_external_token(token_id))

        if self.cache is None:
            return await load()
        return await self.cache.fetch(ViewKeys.external_token(token_id), load)

    async def revoke(self, token_id) -> ExternalProofToken:
        """Revoke a token; a token already terminal is returned unchanged"""
        try:
            token = ExternalProofToken.from_payload(await self.client.revoke_external_token(token_id))
        except (ConflictError, GoneError) as e:
            token = ExternalProofToken.from_payload(await self.client.get_external_token(token_id))
            logger.info(f"Token {token_id} already {token.status.value}, revoke is a no-op ({e.status})")
        else:
            logger.info(f"🔐 EXTERNAL_TOKEN_REVOKED: {token_id} -> {token.status.value}")

        await self._invalidate(MutationKind.EXTERNAL_TOKEN_REVOKE, token)
        return token

    async def _invalidate(self, kind: MutationKind, token: ExternalProofToken):
        if self.cache is None:
            return
        ids = EntityIds(
            escrow_id=token.target.escrow_id,
            token_id=token.token_id,
            milestone_idx=token.target.milestone_idx,
        )
        await self.graph.apply(kind, ids, self.cache)
