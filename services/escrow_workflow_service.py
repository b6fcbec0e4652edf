"""
Escrow Workflow Service
=======================

Coordinates a user action end to end:

    ActionAuthority check -> EscrowApiClient call -> ConsistencyGraph.apply
    -> optional PollScheduler watch

Mutations hold a per-intent in-flight guard so a second trigger while one is
pending is refused. Mutations that carry an Idempotency-Key reuse the stored key
across automatic retries and drop it once the intent succeeded or failed for good.
Cached views are read through `load_*` helpers that register their loaders with
the shared ViewCache, so invalidations can refetch them.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

from models import (
    Escrow,
    EscrowDestination,
    EscrowStatus,
    EscrowSummary,
    InvariantViolationError,
    Milestone,
    MilestoneStatus,
    Payment,
    PaymentMode,
    Proof,
    ProofDecision,
    ViewerContext,
    parse_decimal,
    validate_milestone_plan,
)
from caching.view_cache import ViewCache, ViewKey
from config import Config
from services.action_authority import Action, ActionAuthority, action_authority
from services.consistency_graph import (
    ConsistencyGraph,
    EntityIds,
    MutationKind,
    ViewKeys,
    consistency_graph,
)
from services.escrow_api_client import EscrowAction, EscrowApiClient
from services.idempotency_service import IdempotencyService, IntentKind, intent_for
from services.poll_watcher import PollScheduler, PollWatch
from utils.api_errors import (
    ConflictError,
    DuplicateSubmissionError,
    ValidationError,
    is_retryable,
)
from utils.pagination import Page

logger = logging.getLogger(__name__)


ESCROW_ACTIONS: Dict[EscrowAction, tuple] = {
    EscrowAction.MARK_DELIVERED: (Action.MARK_DELIVERED, MutationKind.MARK_DELIVERED),
    EscrowAction.CLIENT_APPROVE: (Action.CLIENT_APPROVE, MutationKind.CLIENT_APPROVE),
    EscrowAction.CLIENT_REJECT: (Action.CLIENT_REJECT, MutationKind.CLIENT_REJECT),
    EscrowAction.CHECK_DEADLINE: (Action.CHECK_DEADLINE, MutationKind.CHECK_DEADLINE),
}


def validate_escrow_draft(payload: Mapping[str, Any]):
    """
    Check an escrow creation payload before it is sent.

    Raises InvariantViolationError when the destination is not exactly one of
    provider/beneficiary or when the milestone plan is inconsistent.
    """
    destination = EscrowDestination.from_payload(payload)
    if destination is None:
        raise InvariantViolationError("Escrow destination must be exactly one of provider or beneficiary")

    currency = str(payload.get("currency") or "").upper()
    if not currency:
        raise InvariantViolationError("Escrow currency is required")
    amount_total = parse_decimal(payload.get("amount_total"), "amount_total")
    if amount_total <= Decimal("0"):
        raise InvariantViolationError("Escrow amount_total must be positive")

    raw_mode = str(payload.get("payment_mode") or PaymentMode.MILESTONE.value).upper()
    draft = Escrow(
        id="draft",
        status=EscrowStatus.DRAFT,
        amount_total=amount_total,
        currency=currency,
        payment_mode=PaymentMode(raw_mode) if raw_mode in PaymentMode._value2member_map_ else PaymentMode.MILESTONE,
        destination=destination,
    )
    milestones = []
    for position, item in enumerate(payload.get("milestones") or (), start=1):
        milestones.append(Milestone(
            id=f"draft-{position}",
            escrow_id=draft.id,
            sequence_index=int(item.get("sequence_index", item.get("idx", position))),
            amount=parse_decimal(item.get("amount"), "milestone amount"),
            currency=str(item.get("currency") or currency).upper(),
            status=MilestoneStatus.WAITING,
            label=item.get("label"),
        ))

    is_valid, problems = validate_milestone_plan(draft, milestones)
    if not is_valid:
        raise InvariantViolationError("; ".join(problems))


class EscrowWorkflowService:
    """User-facing escrow operations with authorization, consistency and polling"""

    def __init__(
        self,
        client: EscrowApiClient,
        cache: Optional[ViewCache] = None,
        graph: Optional[ConsistencyGraph] = None,
        authority: Optional[ActionAuthority] = None,
        scheduler: Optional[PollScheduler] = None,
        idempotency: Optional[IdempotencyService] = None,
    ):
        self.client = client
        self.cache = cache or client.cache or ViewCache(stale_after=Config.VIEW_CACHE_STALE_SECONDS)
        if client.cache is None:
            client.cache = self.cache
        self.graph = graph or consistency_graph
        self.authority = authority or action_authority
        self.scheduler = scheduler or PollScheduler(cache=self.cache, graph=self.graph)
        self.idempotency = idempotency or IdempotencyService()
        self._in_flight: Set[str] = set()

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _guard(self, intent: str):
        if intent in self._in_flight:
            logger.warning(f"⚠️ DUPLICATE_SUBMISSION: {intent} already in flight")
            raise DuplicateSubmissionError(intent)
        self._in_flight.add(intent)
        try:
            yield
        finally:
            self._in_flight.discard(intent)

    def is_in_flight(self, intent: str) -> bool:
        return intent in self._in_flight

    async def _mutate(
        self,
        intent: str,
        call: Callable[[Optional[str]], Awaitable[Any]],
        kind: MutationKind,
        ids: EntityIds,
        keyed: bool = False,
        settle_on_conflict: bool = True,
    ) -> Any:
        """
        Run one mutation under the in-flight guard.

        With `keyed`, the intent's stored Idempotency-Key is passed to `call`.
        Affected views are invalidated on success and, when `settle_on_conflict`,
        also after a 409/422 since the server state moved anyway.
        """
        async with self._guard(intent):
            key = self.idempotency.get_or_create(intent) if keyed else None
            try:
                result = await call(key)
            except (ConflictError, ValidationError) as e:
                if keyed:
                    self.idempotency.clear(intent)
                if settle_on_conflict:
                    logger.info(f"Mutation {intent} refused with HTTP {e.status}, refreshing views")
                    await self.graph.apply(kind, ids, self.cache)
                raise
            except Exception as e:
                if keyed and not is_retryable(e):
                    self.idempotency.clear(intent)
                raise
            if keyed:
                self.idempotency.clear(intent)

        logger.info(f"✅ MUTATION_OK: {intent}")
        await self.graph.apply(kind, ids, self.cache)
        return result

    # ------------------------------------------------------------------
    # Cached views
    # ------------------------------------------------------------------

    async def _view(self, key: ViewKey, loader: Callable[[], Awaitable[Any]], fresh: bool = False) -> Any:
        if fresh:
            self.cache.invalidate(key, exact=True)
        return await self.cache.fetch(key, loader)

    async def load_summary(self, escrow_id, viewer: str = "sender", fresh: bool = False) -> EscrowSummary:
        summary = await self._view(
            ViewKeys.escrow_summary(escrow_id, viewer),
            lambda: self.client.get_escrow_summary(escrow_id, viewer),
            fresh,
        )
        self.authority.unexpected_actions(summary.context_for())
        return summary

    async def load_escrow(self, escrow_id, fresh: bool = False) -> Escrow:
        return await self._view(ViewKeys.escrow(escrow_id), lambda: self.client.get_escrow(escrow_id), fresh)

    async def load_escrows(self, fresh: bool = False, **filters) -> Page[Escrow]:
        return await self._view(ViewKeys.escrows_list(filters), lambda: self.client.list_escrows(**filters), fresh)

    async def load_milestones(self, escrow_id, fresh: bool = False):
        return await self._view(ViewKeys.milestones(escrow_id), lambda: self.client.list_milestones(escrow_id), fresh)

    async def load_proofs(self, fresh: bool = False, **filters) -> Page[Proof]:
        return await self._view(ViewKeys.proofs_list(filters), lambda: self.client.list_proofs(**filters), fresh)

    async def load_proof(self, proof_id, fresh: bool = False) -> Proof:
        return await self._view(ViewKeys.proof(proof_id), lambda: self.client.get_proof(proof_id), fresh)

    async def load_payment(self, payment_id, fresh: bool = False) -> Payment:
        return await self._view(ViewKeys.payment(payment_id), lambda: self.client.get_payment(payment_id), fresh)

    async def load_review_queue(self, fresh: bool = False, **filters) -> Page[Dict[str, Any]]:
        return await self._view(ViewKeys.review_queue(filters), lambda: self.client.review_queue(**filters), fresh)

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    async def create_escrow(self, payload: Mapping[str, Any], draft_id: str = "new") -> Escrow:
        validate_escrow_draft(payload)
        intent = intent_for(IntentKind.ESCROW_CREATE, draft_id)
        return await self._mutate(
            intent,
            lambda key: self.client.create_escrow(payload, idempotency_key=key),
            MutationKind.ESCROW_CREATE,
            EntityIds(),
            keyed=True,
            settle_on_conflict=False,
        )

    async def create_funding_session(self, ctx: ViewerContext, escrow_id) -> Any:
        self.authority.require_action(ctx, Action.FUND_ESCROW, target=f"escrow {escrow_id}")
        return await self._mutate(
            intent_for(IntentKind.FUNDING_SESSION, escrow_id),
            lambda key: self.client.create_funding_session(escrow_id),
            MutationKind.FUNDING_SESSION,
            EntityIds(escrow_id=str(escrow_id)),
        )

    async def deposit(self, ctx: ViewerContext, escrow_id, watch: bool = True) -> Any:
        """Fund an escrow; keeps polling the sender summary until funding lands"""
        self.authority.require_action(ctx, Action.FUND_ESCROW, target=f"escrow {escrow_id}")
        result = await self._mutate(
            intent_for(IntentKind.ESCROW_DEPOSIT, escrow_id),
            lambda key: self.client.deposit(escrow_id, key),
            MutationKind.ESCROW_DEPOSIT,
            EntityIds(escrow_id=str(escrow_id)),
            keyed=True,
        )
        if watch:
            self.watch_funding(escrow_id, opt_in=True)
        return result

    async def escrow_action(self, ctx: ViewerContext, escrow_id, action: EscrowAction) -> Any:
        required, kind = ESCROW_ACTIONS[action]
        self.authority.require_action(ctx, required, target=f"escrow {escrow_id}")
        return await self._mutate(
            f"{kind.value}:{escrow_id}",
            lambda key: self.client.escrow_action(escrow_id, action),
            kind,
            EntityIds(escrow_id=str(escrow_id)),
        )

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    async def upload_proof_file(self, ctx: ViewerContext, escrow_id, content: bytes, filename: str,
                                content_type: str = "application/octet-stream") -> Dict[str, Any]:
        self.authority.require_action(ctx, Action.UPLOAD_PROOF_FILE, target=f"escrow {escrow_id}")
        return await self.client.upload_proof_file(content, filename, content_type, escrow_id=escrow_id)

    async def submit_proof(self, ctx: ViewerContext, escrow_id, milestone_id=None,
                           description: Optional[str] = None, attachment_url: Optional[str] = None,
                           file_id: Optional[str] = None, watch: bool = True) -> Proof:
        self.authority.require_action(ctx, Action.SUBMIT_PROOF, target=f"escrow {escrow_id}")
        payload = {
            "escrow_id": escrow_id,
            "milestone_id": milestone_id,
            "description": description,
            "attachment_url": attachment_url,
            "file_id": file_id,
        }
        payload = {name: value for name, value in payload.items() if value is not None}
        proof = await self._mutate(
            intent_for(IntentKind.PROOF_SUBMISSION, f"{escrow_id}:{milestone_id}"),
            lambda key: self.client.create_proof(payload),
            MutationKind.PROOF_SUBMISSION,
            EntityIds(escrow_id=str(escrow_id)),
            settle_on_conflict=False,
        )
        if watch:
            self.watch_proof(proof)
        return proof

    async def decide_proof(self, ctx: ViewerContext, proof: Proof, decision: ProofDecision,
                           comment: Optional[str] = None) -> Proof:
        """
        Approve or reject a pending proof.

        A proof decided elsewhere surfaces as ConflictError; views are refreshed
        either way so the viewer sees the decision that won.
        """
        if proof.is_decided:
            raise ConflictError(f"Proof {proof.id} is already {proof.status.value}", status=409)
        self.authority.require_action(ctx, Action.DECIDE_PROOF, target=f"proof {proof.id}")
        return await self._mutate(
            f"{MutationKind.PROOF_DECISION.value}:{proof.id}",
            lambda key: self.client.decide_proof(proof.id, decision, comment),
            MutationKind.PROOF_DECISION,
            EntityIds(escrow_id=proof.escrow_id, proof_id=proof.id),
        )

    async def request_advisor_review(self, ctx: ViewerContext, proof: Proof) -> Any:
        self.authority.require_action(ctx, Action.REQUEST_ADVISOR_REVIEW, target=f"proof {proof.id}")
        return await self._mutate(
            f"{MutationKind.ADVISOR_REVIEW_REQUEST.value}:{proof.id}",
            lambda key: self.client.request_advisor_review(proof.id),
            MutationKind.ADVISOR_REVIEW_REQUEST,
            EntityIds(escrow_id=proof.escrow_id, proof_id=proof.id),
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def execute_payment(self, ctx: ViewerContext, escrow_id, payment_id, watch: bool = True) -> Payment:
        """Execute a payout and (by default) follow it until it settles"""
        self.authority.require_action(ctx, Action.EXECUTE_PAYMENT, target=f"payment {payment_id}")
        payment = await self._mutate(
            intent_for(IntentKind.PAYMENT_EXECUTION, payment_id),
            lambda key: self.client.execute_payment(payment_id, key),
            MutationKind.PAYMENT_EXECUTION,
            EntityIds(escrow_id=str(escrow_id), payment_id=str(payment_id)),
            keyed=True,
        )
        if watch:
            self.watch_payment(escrow_id, payment_id, data=payment, opt_in=True)
        return payment

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def watch_funding(self, escrow_id, data: Any = None, opt_in: bool = False) -> PollWatch:
        return self.scheduler.start(
            f"escrow:{escrow_id}",
            "funding_escrow",
            fetch=lambda: self.load_summary(escrow_id, "sender", fresh=True),
            data=data,
            opt_in=opt_in,
            ids=EntityIds(escrow_id=str(escrow_id)),
        )

    def watch_proof(self, proof: Proof, opt_in: bool = False) -> PollWatch:
        return self.scheduler.start(
            f"proof:{proof.id}",
            "proof_review",
            fetch=lambda: self.load_proof(proof.id, fresh=True),
            data=proof,
            opt_in=opt_in,
            ids=EntityIds(escrow_id=proof.escrow_id, proof_id=proof.id),
        )

    def watch_milestones(self, escrow_id, viewer: str = "sender", data: Any = None,
                         opt_in: bool = False) -> PollWatch:
        return self.scheduler.start(
            f"escrow:{escrow_id}",
            "milestone_progression",
            fetch=lambda: self.load_summary(escrow_id, viewer, fresh=True),
            data=data,
            opt_in=opt_in,
            ids=EntityIds(escrow_id=str(escrow_id)),
            view=f"milestone_progression:{viewer}",
        )

    def watch_payment(self, escrow_id, payment_id, data: Any = None, opt_in: bool = False) -> PollWatch:
        return self.scheduler.start(
            f"payment:{payment_id}",
            "payout_status",
            fetch=lambda: self.load_payment(payment_id, fresh=True),
            data=data,
            opt_in=opt_in,
            ids=EntityIds(escrow_id=str(escrow_id), payment_id=str(payment_id)),
        )

    def refresh_watch(self, entity_key: str, view: str) -> Optional[PollWatch]:
        """Manual refresh after a timeout: re-arms the watch so it can start again"""
        watch = self.scheduler.get(entity_key, view)
        if watch is not None:
            watch.reset()
        return watch

    async def teardown_view(self, view: str) -> int:
        cancelled = self.scheduler.cancel_view(view)
        self.scheduler.prune()
        return cancelled

    async def close(self):
        await self.scheduler.shutdown()
