"""
External Proof Session
Token-scoped pathway used by an external beneficiary holding a secure link

The secret travels only in headers (Authorization: Bearer and X-External-Token),
never in a URL. The session never touches the authenticated client. Once the
backend reports the link terminal (410, or 401 for a bad secret) the local copy
of the secret is purged and every later call fails without a request.
"""

import asyncio
import aiohttp
import logging
from typing import Any, Dict, Mapping, Optional

from config import Config
from models import ExternalProofTokenTarget
from caching.view_cache import ViewCache
from services.consistency_graph import ViewKeys
from services.external_token_store import ExternalTokenStore, fingerprint
from services.poll_watcher import PollScheduler, PollWatch
from services.retry_service import RETRY_STRATEGIES, RetryService
from services.secure_link_issuer import consume_handoff_url
from utils.api_errors import (
    DuplicateSubmissionError,
    ExternalLinkTerminalError,
    GoneError,
    NetworkError,
    TokenTargetMismatchError,
    UnauthenticatedError,
    error_from_response,
)
from utils.data_sanitizer import data_sanitizer, mask_token_safe
from utils.network_health import NetworkErrorKind, NetworkHealth, network_health

logger = logging.getLogger(__name__)

EXTERNAL_PROOF_STATUS_VIEW = "external_proof_status"


def proof_type_for(content_type: Optional[str]) -> str:
    return "PHOTO" if (content_type or "").startswith("image/") else "DOCUMENT"


class ExternalProofSession:
    """Bearer-only session bound to one external proof token"""

    def __init__(
        self,
        secret: str,
        target: Optional[ExternalProofTokenTarget] = None,
        base_url: Optional[str] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        store: Optional[ExternalTokenStore] = None,
        cache: Optional[ViewCache] = None,
        retry_service: Optional[RetryService] = None,
        health: Optional[NetworkHealth] = None,
        timeout: Optional[float] = None,
        multi_submission: Optional[bool] = None,
    ):
        if not secret:
            raise ValueError("An external session needs a token")
        self._secret: Optional[str] = secret
        self.fingerprint = fingerprint(secret)
        self.target = target
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/")
        self.store = store
        self.cache = cache
        self.retry_service = retry_service or RetryService(**RETRY_STRATEGIES["external"])
        self.health = health or network_health
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.HTTP_TIMEOUT_SECONDS)
        self._http = http_session
        self._owns_session = http_session is None
        self.terminal_error: Optional[ExternalLinkTerminalError] = None
        self.multi_submission = Config.EXTERNAL_TOKEN_MULTI_SUBMISSION if multi_submission is None else multi_submission
        self.submissions = 0

    @classmethod
    def from_handoff_url(cls, url: str, store: ExternalTokenStore, **kwargs) -> "ExternalProofSession":
        """Consume a one-time link (stripping its secret) or resume from the stored secret"""
        secret, _ = consume_handoff_url(url, store)
        secret = secret or store.current()
        if not secret:
            raise ExternalLinkTerminalError("No secure link token found. Ask the sender for a new link.")
        return cls(secret, store=store, **kwargs)

    @property
    def is_dead(self) -> bool:
        return self.terminal_error is not None

    def __repr__(self):
        state = "dead" if self.is_dead else "active"
        return f"<ExternalProofSession({mask_token_safe(self._secret)}, {state})>"

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._http

    async def close(self):
        if self._http is not None and self._owns_session and not self._http.closed:
            await self._http.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self._secret}",
            "X-External-Token": self._secret,
        }

    def _terminate(self, status: int) -> ExternalLinkTerminalError:
        if self.store is not None and self._secret:
            self.store.purge(self._secret)
        if self.cache is not None:
            self.cache.invalidate(("external",))
        logger.warning(f"🔐 EXTERNAL_LINK_TERMINAL: {mask_token_safe(self._secret)} (HTTP {status})")
        self._secret = None
        if status == 401:
            message = "Invalid or expired link. Ask the sender for a new link."
        else:
            message = "This link has expired or has already been used."
        self.terminal_error = ExternalLinkTerminalError(message, status=status)
        return self.terminal_error

    def _ensure_alive(self):
        if self.terminal_error is not None:
            raise self.terminal_error

    def check_target(self, escrow_id, milestone_idx):
        """Refuse an (escrow, milestone) the token is not bound to"""
        if self.target is not None and not self.target.matches(escrow_id, milestone_idx):
            raise TokenTargetMismatchError(
                f"Link is bound to escrow {self.target.escrow_id} milestone {self.target.milestone_idx}"
            )

    async def _request_once(self, method: str, path: str, json: Any = None,
                            form_factory=None) -> Any:
        self._ensure_alive()
        try:
            async with self._session().request(
                method,
                f"{self.base_url}{path}",
                json=json,
                data=form_factory() if form_factory else None,
                headers=self._headers(),
                timeout=self.timeout,
            ) as response:
                if response.content_type == "application/json":
                    payload = await response.json()
                else:
                    payload = (await response.text()) or None

                if response.status >= 400:
                    error = error_from_response(response.status, payload, response.headers.get("Retry-After"))
                    if isinstance(error, (GoneError, UnauthenticatedError)):
                        raise self._terminate(response.status) from error
                    if response.status >= 500:
                        self.health.record_error(NetworkErrorKind.SERVER)
                    logger.warning(f"❌ EXTERNAL_API_ERROR: {method} {path} -> HTTP {response.status}")
                    raise error
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.health.record_error(NetworkErrorKind.NETWORK)
            raise NetworkError(f"Network error: {e}") from e

    async def _get(self, path: str) -> Any:
        return await self.retry_service.retry_async(lambda: self._request_once("GET", path), label=f"GET {path}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def fetch_escrow_summary(self) -> Dict[str, Any]:
        """Redacted summary of the escrow the link points at"""
        async def load():
            return data_sanitizer.redact_external_summary(await self._get("/external/escrows/summary"))

        self._ensure_alive()
        if self.cache is None:
            return await load()
        return await self.cache.fetch(ViewKeys.external_escrow_summary(self.fingerprint), load)

    async def upload_file(self, content: bytes, filename: str, content_type: str = "application/octet-stream",
                          escrow_id=None, milestone_idx: Optional[int] = None) -> Dict[str, Any]:
        """Upload one proof file; the backend resolves the target from the token"""
        self._ensure_alive()
        if escrow_id is not None and milestone_idx is not None:
            self.check_target(escrow_id, milestone_idx)

        def form():
            data = aiohttp.FormData()
            data.add_field("file", content, filename=filename, content_type=content_type)
            return data

        upload = await self._request_once("POST", "/external/files/proofs", form_factory=form)
        if self.target is None and upload.get("escrow_id") is not None and upload.get("milestone_idx") is not None:
            self.target = ExternalProofTokenTarget(
                escrow_id=str(upload["escrow_id"]), milestone_idx=int(upload["milestone_idx"])
            )
        else:
            self.check_target(upload.get("escrow_id"), upload.get("milestone_idx"))
        logger.info(f"✅ EXTERNAL_UPLOAD: {filename} ({upload.get('size_bytes')} bytes)")
        return upload

    async def submit_proof(self, escrow_id, milestone_idx: int, upload: Mapping[str, Any],
                           metadata: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Submit an uploaded file as the proof for the bound milestone"""
        self._ensure_alive()
        self.check_target(escrow_id, milestone_idx)
        if self.submissions and not self.multi_submission:
            # Extra uploads are allowed, a second submission is not
            raise DuplicateSubmissionError(f"external-proof:{escrow_id}:{milestone_idx}")
        payload = {
            "escrow_id": escrow_id,
            "milestone_idx": milestone_idx,
            "type": proof_type_for(upload.get("content_type")),
            "storage_key": upload["storage_key"],
            "storage_url": upload["storage_url"],
            "sha256": upload["sha256"],
        }
        if metadata:
            payload["metadata"] = dict(metadata)
        result = await self._request_once("POST", "/external/proofs/submit", json=payload)
        self.submissions += 1
        if self.cache is not None:
            self.cache.invalidate(ViewKeys.external_escrow_summary(self.fingerprint))
        logger.info(f"✅ EXTERNAL_PROOF_SUBMITTED: proof {result.get('proof_id')} for escrow {escrow_id}")
        return data_sanitizer.redact_external_proof(result)

    async def proof_status(self, proof_id) -> Dict[str, Any]:
        return data_sanitizer.redact_external_proof(await self._get(f"/external/proofs/{proof_id}/status"))

    def watch_proof_status(self, proof_id, scheduler: PollScheduler, data: Any = None) -> PollWatch:
        """Poll a submitted proof with the escalating external schedule until terminal"""
        self._ensure_alive()
        return scheduler.start(
            f"external-proof:{proof_id}",
            "external_proof_status",
            fetch=lambda: self.proof_status(proof_id),
            data=data,
            opt_in=True,
            view=EXTERNAL_PROOF_STATUS_VIEW,
        )
