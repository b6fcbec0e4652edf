"""Escrow backend REST client (authenticated pathway)"""

import asyncio
import aiohttp
import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from config import Config
from models import Escrow, EscrowSummary, Milestone, Payment, Proof, ProofDecision
from caching.view_cache import ViewCache
from services.retry_service import RetryService
from utils.api_errors import (
    EndpointNotForClientError,
    NetworkError,
    UnauthenticatedError,
    error_from_response,
)
from utils.data_sanitizer import sanitize_for_log
from utils.network_health import NetworkErrorKind, NetworkHealth, network_health
from utils.pagination import Page, build_query_params
from utils.session_context import SessionContext

logger = logging.getLogger(__name__)


# Endpoints the backend reserves for operations, webhooks or server-side use
NOT_FOR_CLIENT_ENDPOINTS: List[Tuple["re.Pattern", Optional[str], str]] = [
    (re.compile(r"^/health/?$"), "GET", "Healthcheck (/health)"),
    (re.compile(r"^/files/signed(/|$)"), "GET", "Signed proof download (/files/signed/{token})"),
    (re.compile(r"^/mandates/cleanup/?$"), "POST", "Mandate cleanup maintenance (/mandates/cleanup)"),
    (re.compile(r"^/advisor/proofs/[^/]+/(approve|reject)/?$"), "POST",
     "Advisor decision routes (/advisor/proofs/{id}/approve|reject)"),
    (re.compile(r"^/kct_public/projects(?:/[^/]+/(?:managers|mandates))?/?$"), "POST",
     "KCT Public project management (/kct_public/projects*)"),
    (re.compile(r"^/spend/purchases/?$"), "POST", "Direct spend purchase (/spend/purchases)"),
    (re.compile(r"^/spend/?$"), "POST", "Direct spend trigger (/spend)"),
    (re.compile(r"^/apikeys(?:/[^/]+)?/?$"), "GET", "Deprecated API key listing (/apikeys)"),
    (re.compile(r"^/apikeys/[^/]+/?$"), "DELETE", "Deprecated API key delete (/apikeys/{id})"),
    (re.compile(r"^/psp/(?:stripe/)?webhook/?$"), "POST", "PSP webhooks (/psp/webhook, /psp/stripe/webhook)"),
    (re.compile(r"^/debug/stripe/account/[^/]+/?$"), "GET", "Stripe debug account (/debug/stripe/account/{user_id})"),
]


def assert_client_endpoint(method: str, path: str):
    """Raise EndpointNotForClientError for endpoints reserved to the backend"""
    method = method.upper()
    resolved = urlsplit(path).path if path.startswith("http") else path
    if not resolved.startswith("/"):
        resolved = f"/{resolved}"
    for pattern, guard_method, label in NOT_FOR_CLIENT_ENDPOINTS:
        if guard_method and guard_method != method:
            continue
        if pattern.match(resolved):
            raise EndpointNotForClientError(method, resolved, label)


class EscrowAction(Enum):
    """Escrow-level POST actions: /escrows/{id}/{path}"""
    MARK_DELIVERED = "mark-delivered"
    CLIENT_APPROVE = "client-approve"
    CLIENT_REJECT = "client-reject"
    CHECK_DEADLINE = "check-deadline"


class EscrowApiClient:
    """
    Client for the escrow backend's authenticated REST contract.

    429/5xx/network failures are retried for reads and for mutations sent with an
    Idempotency-Key; any other mutation is sent once. A 401 resets the session
    context and clears the view cache.
    """

    def __init__(
        self,
        session_context: SessionContext,
        base_url: Optional[str] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
        cache: Optional[ViewCache] = None,
        retry_service: Optional[RetryService] = None,
        health: Optional[NetworkHealth] = None,
        timeout: Optional[float] = None,
    ):
        self.session_context = session_context
        self.base_url = (base_url or Config.API_BASE_URL).rstrip("/")
        self.cache = cache
        self.retry_service = retry_service or RetryService()
        self.health = health or network_health
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.HTTP_TIMEOUT_SECONDS)
        self._http = http_session
        self._owns_session = http_session is None
        self._resetting_session = False

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

    def _on_unauthenticated(self):
        if self._resetting_session:
            return
        self._resetting_session = True
        try:
            logger.warning("🔐 SESSION_EXPIRED: resetting session and clearing cached views")
            self.session_context.clear()
            if self.cache is not None:
                self.cache.clear()
        finally:
            self._resetting_session = False

    async def _request_once(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        form_factory: Optional[Callable[[], aiohttp.FormData]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        request_headers = {"Accept": "application/json"}
        request_headers.update(self.session_context.auth_headers())
        if headers:
            request_headers.update(headers)

        try:
            async with self._session().request(
                method,
                f"{self.base_url}{path}",
                params=build_query_params(params) if params else None,
                json=json,
                data=form_factory() if form_factory else None,
                headers=request_headers,
                timeout=self.timeout,
            ) as response:
                if response.content_type == "application/json":
                    payload = await response.json()
                else:
                    text = await response.text()
                    payload = text or None

                if response.status >= 400:
                    error = error_from_response(response.status, payload, response.headers.get("Retry-After"))
                    logger.warning(
                        f"❌ API_ERROR: {method} {path} -> HTTP {response.status}: "
                        f"{sanitize_for_log(error.message)}"
                    )
                    if isinstance(error, UnauthenticatedError):
                        self._on_unauthenticated()
                    elif response.status >= 500:
                        self.health.record_error(NetworkErrorKind.SERVER)
                    raise error

                logger.debug(f"✅ API_OK: {method} {path} -> HTTP {response.status}")
                return payload
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.health.record_error(NetworkErrorKind.NETWORK)
            logger.error(f"Network error on {method} {path}: {e}")
            raise NetworkError(f"Network error: {e}") from e

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        form_factory: Optional[Callable[[], aiohttp.FormData]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """Send a request, retrying only when the call is safe to repeat"""
        method = method.upper()
        assert_client_endpoint(method, path)

        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        async def attempt():
            return await self._request_once(method, path, params=params, json=json,
                                            form_factory=form_factory, headers=headers)

        if method == "GET" or idempotency_key:
            return await self.retry_service.retry_async(attempt, label=f"{method} {path}")
        return await attempt()

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    async def list_escrows(self, mine: Optional[bool] = None, status: Optional[str] = None,
                           limit: Optional[int] = None, offset: Optional[int] = None) -> Page[Escrow]:
        data = await self.request("GET", "/escrows", params={
            "mine": mine, "status": status, "limit": limit, "offset": offset,
        })
        return Page.from_payload(data, Escrow.from_payload)

    async def create_escrow(self, payload: Mapping[str, Any], idempotency_key: Optional[str] = None) -> Escrow:
        data = await self.request("POST", "/escrows", json=dict(payload), idempotency_key=idempotency_key)
        return Escrow.from_payload(data)

    async def get_escrow(self, escrow_id) -> Escrow:
        data = await self.request("GET", f"/escrows/{escrow_id}")
        return Escrow.from_payload(data)

    async def get_escrow_summary(self, escrow_id, viewer: str = "sender") -> EscrowSummary:
        """Viewer-scoped summary; 'admin' reads the ops flavour"""
        path = f"/admin/escrows/{escrow_id}/summary" if viewer == "admin" else f"/escrows/{escrow_id}/summary"
        data = await self.request("GET", path)
        return EscrowSummary.from_payload(data)

    async def list_milestones(self, escrow_id) -> List[Milestone]:
        data = await self.request("GET", f"/escrows/{escrow_id}/milestones")
        page = Page.from_payload(data, lambda item: Milestone.from_payload(item, escrow_id=str(escrow_id)))
        return page.items

    async def escrow_action(self, escrow_id, action: EscrowAction) -> Any:
        return await self.request("POST", f"/escrows/{escrow_id}/{action.value}")

    async def create_funding_session(self, escrow_id) -> Any:
        return await self.request("POST", f"/escrows/{escrow_id}/funding-session", json={})

    async def deposit(self, escrow_id, idempotency_key: str) -> Any:
        return await self.request("POST", f"/escrows/{escrow_id}/deposit", json={},
                                  idempotency_key=idempotency_key)

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    async def list_proofs(self, escrow_id=None, status: Optional[str] = None,
                          limit: Optional[int] = None, offset: Optional[int] = None) -> Page[Proof]:
        data = await self.request("GET", "/proofs", params={
            "escrow_id": escrow_id, "status": status, "limit": limit, "offset": offset,
        })
        return Page.from_payload(data, Proof.from_payload)

    async def get_proof(self, proof_id) -> Proof:
        data = await self.request("GET", f"/proofs/{proof_id}")
        return Proof.from_payload(data)

    async def create_proof(self, payload: Mapping[str, Any]) -> Proof:
        data = await self.request("POST", "/proofs", json=dict(payload))
        return Proof.from_payload(data)

    async def decide_proof(self, proof_id, decision: ProofDecision, comment: Optional[str] = None) -> Proof:
        body = {"decision": decision.value}
        if comment:
            body["comment"] = comment
        data = await self.request("POST", f"/proofs/{proof_id}/decision", json=body)
        return Proof.from_payload(data)

    async def request_advisor_review(self, proof_id) -> Any:
        return await self.request("POST", f"/proofs/{proof_id}/request_advisor_review", json={})

    async def upload_proof_file(self, content: bytes, filename: str, content_type: str = "application/octet-stream",
                                escrow_id=None) -> Dict[str, Any]:
        def form():
            data = aiohttp.FormData()
            data.add_field("file", content, filename=filename, content_type=content_type)
            if escrow_id is not None:
                data.add_field("escrow_id", str(escrow_id))
            return data

        return await self.request("POST", "/files/proofs", form_factory=form)

    async def review_queue(self, limit: Optional[int] = None, offset: Optional[int] = None,
                           advisor_id=None, unassigned_only: Optional[bool] = None) -> Page[Dict[str, Any]]:
        data = await self.request("GET", "/admin/proofs/review-queue", params={
            "limit": limit, "offset": offset, "advisor_id": advisor_id, "unassigned_only": unassigned_only,
        })
        return Page.from_payload(data)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def execute_payment(self, payment_id, idempotency_key: str) -> Payment:
        data = await self.request("POST", f"/payments/execute/{payment_id}", idempotency_key=idempotency_key)
        return Payment.from_payload(data)

    async def get_payment(self, payment_id) -> Payment:
        data = await self.request("GET", f"/payments/{payment_id}")
        return Payment.from_payload(data)

    # ------------------------------------------------------------------
    # External proof tokens (issuer side)
    # ------------------------------------------------------------------

    async def issue_external_token(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.request("POST", "/sender/external-proof-tokens", json=dict(payload))

    async def list_external_tokens(self, escrow_id, milestone_idx: Optional[int] = None,
                                   limit: Optional[int] = None, offset: Optional[int] = None) -> Any:
        return await self.request("GET", "/sender/external-proof-tokens", params={
            "escrow_id": escrow_id, "milestone_idx": milestone_idx, "limit": limit, "offset": offset,
        })

    async def get_external_token(self, token_id) -> Dict[str, Any]:
        return await self.request("GET", f"/sender/external-proof-tokens/{token_id}")

    async def revoke_external_token(self, token_id) -> Dict[str, Any]:
        return await self.request("POST", f"/sender/external-proof-tokens/{token_id}/revoke")
