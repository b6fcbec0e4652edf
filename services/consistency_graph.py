"""
Consistency Graph
=================

Declarative table of which cached views each mutation makes stale.

Every mutation the client can perform maps to the complete set of views that
depend on the mutated entities. Over-invalidation is acceptable, missing a view
is not. Keys are hierarchical tuples so invalidating a prefix covers every
filtered or per-viewer variant beneath it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from caching.view_cache import ViewCache, ViewKey

logger = logging.getLogger(__name__)


SUMMARY_VIEWERS: Tuple[str, ...] = ("sender", "admin")
ALL_SUMMARY_VIEWERS: Tuple[str, ...] = ("sender", "admin", "provider")


def freeze_filters(filters: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, Any], ...]:
    """Hashable, order-independent form of list filters (None values dropped)"""
    if not filters:
        return ()
    return tuple(sorted((str(k), v) for k, v in filters.items() if v is not None))


class ViewKeys:
    """Key factory for every cached view"""

    @staticmethod
    def escrows_list_base() -> ViewKey:
        return ("escrows", "list")

    @staticmethod
    def escrows_list(filters: Optional[Mapping[str, Any]] = None) -> ViewKey:
        return ("escrows", "list", freeze_filters(filters))

    @staticmethod
    def escrow(escrow_id) -> ViewKey:
        return ("escrows", str(escrow_id))

    @staticmethod
    def escrow_summary(escrow_id, viewer: str) -> ViewKey:
        return ("escrows", str(escrow_id), "summary", viewer)

    @staticmethod
    def milestones(escrow_id) -> ViewKey:
        return ("milestones", "byEscrow", str(escrow_id))

    @staticmethod
    def proofs_list_base() -> ViewKey:
        return ("proofs", "list")

    @staticmethod
    def proofs_list(filters: Optional[Mapping[str, Any]] = None) -> ViewKey:
        return ("proofs", "list", freeze_filters(filters))

    @staticmethod
    def proof(proof_id) -> ViewKey:
        return ("proofs", str(proof_id))

    @staticmethod
    def payments_admin_base() -> ViewKey:
        return ("payments", "admin")

    @staticmethod
    def payment(payment_id) -> ViewKey:
        return ("payments", str(payment_id))

    @staticmethod
    def review_queue_base() -> ViewKey:
        return ("adminProofReviewQueue",)

    @staticmethod
    def review_queue(filters: Optional[Mapping[str, Any]] = None) -> ViewKey:
        return ("adminProofReviewQueue", "review_queue", freeze_filters(filters))

    @staticmethod
    def sender_dashboard() -> ViewKey:
        return ("senderDashboard", "canonical")

    @staticmethod
    def external_tokens(escrow_id, milestone_idx: Optional[int] = None) -> ViewKey:
        if milestone_idx is None:
            return ("externalProofTokens", "list", str(escrow_id))
        return ("externalProofTokens", "list", str(escrow_id), int(milestone_idx))

    @staticmethod
    def external_token(token_id) -> ViewKey:
        return ("externalProofTokens", "detail", str(token_id))

    @staticmethod
    def external_escrow_summary(fingerprint: str) -> ViewKey:
        return ("external", "escrow", fingerprint)

    @staticmethod
    def external_proof_status(proof_id, fingerprint: str) -> ViewKey:
        return ("external", "proofStatus", str(proof_id), fingerprint)


class MutationKind(Enum):
    PROOF_SUBMISSION = "proof_submission"
    ADVISOR_REVIEW_REQUEST = "advisor_review_request"
    PROOF_DECISION = "proof_decision"
    PAYMENT_EXECUTION = "payment_execution"
    ESCROW_CREATE = "escrow_create"
    ESCROW_DEPOSIT = "escrow_deposit"
    FUNDING_SESSION = "funding_session"
    MARK_DELIVERED = "mark_delivered"
    CLIENT_APPROVE = "client_approve"
    CLIENT_REJECT = "client_reject"
    CHECK_DEADLINE = "check_deadline"
    EXTERNAL_TOKEN_ISSUE = "external_token_issue"
    EXTERNAL_TOKEN_REVOKE = "external_token_revoke"


ESCROW_LEVEL_MUTATIONS: FrozenSet[MutationKind] = frozenset({
    MutationKind.ESCROW_DEPOSIT,
    MutationKind.FUNDING_SESSION,
    MutationKind.MARK_DELIVERED,
    MutationKind.CLIENT_APPROVE,
    MutationKind.CLIENT_REJECT,
    MutationKind.CHECK_DEADLINE,
})


@dataclass(frozen=True)
class EntityIds:
    """Identifiers of the entities a mutation touched"""
    escrow_id: Optional[str] = None
    proof_id: Optional[str] = None
    payment_id: Optional[str] = None
    token_id: Optional[str] = None
    milestone_idx: Optional[int] = None


@dataclass(frozen=True)
class ViewTarget:
    """A view to mark stale; `refetch` asks for an eager reload of that exact key"""
    key: ViewKey
    exact: bool = False
    refetch: bool = False


def _proof_list_targets(escrow_id: str, cache: Optional[ViewCache]) -> List[ViewTarget]:
    """Every cached proof list filtered on this escrow, else the whole list base"""
    targets = []
    if cache is not None:
        for key in cache.find(ViewKeys.proofs_list_base()):
            filters = dict(key[2]) if len(key) > 2 and isinstance(key[2], tuple) else {}
            if str(filters.get("escrow_id")) == escrow_id:
                targets.append(ViewTarget(key, exact=True))
    return targets or [ViewTarget(ViewKeys.proofs_list_base())]


def _summaries(escrow_id: str, viewers: Iterable[str], refetch: bool = False) -> List[ViewTarget]:
    targets = []
    for viewer in viewers:
        key = ViewKeys.escrow_summary(escrow_id, viewer)
        targets.append(ViewTarget(key, exact=True, refetch=refetch))
    return targets


class ConsistencyGraph:
    """Resolves and applies the invalidation table"""

    def affected_views(
        self,
        kind: MutationKind,
        ids: EntityIds,
        cache: Optional[ViewCache] = None,
    ) -> FrozenSet[ViewTarget]:
        targets: List[ViewTarget] = []
        escrow_id = str(ids.escrow_id) if ids.escrow_id is not None else None

        if kind in (MutationKind.PROOF_SUBMISSION, MutationKind.ADVISOR_REVIEW_REQUEST):
            if escrow_id is not None:
                targets.extend(_proof_list_targets(escrow_id, cache))
                targets.append(ViewTarget(ViewKeys.milestones(escrow_id)))
                targets.extend(_summaries(escrow_id, SUMMARY_VIEWERS))
            else:
                targets.append(ViewTarget(ViewKeys.proofs_list_base()))
            targets.append(ViewTarget(ViewKeys.review_queue_base()))
            targets.append(ViewTarget(ViewKeys.sender_dashboard()))
            if ids.proof_id is not None:
                targets.append(ViewTarget(ViewKeys.proof(ids.proof_id)))

        elif kind is MutationKind.PROOF_DECISION:
            targets.append(ViewTarget(ViewKeys.review_queue_base()))
            if escrow_id is not None:
                targets.extend(_summaries(escrow_id, SUMMARY_VIEWERS))
            targets.append(ViewTarget(ViewKeys.sender_dashboard()))
            if ids.proof_id is not None:
                targets.append(ViewTarget(ViewKeys.proof(ids.proof_id)))

        elif kind is MutationKind.PAYMENT_EXECUTION:
            if escrow_id is not None:
                targets.extend(_summaries(escrow_id, ALL_SUMMARY_VIEWERS))
                targets.append(ViewTarget(ViewKeys.milestones(escrow_id)))
            targets.append(ViewTarget(ViewKeys.payments_admin_base()))
            targets.append(ViewTarget(ViewKeys.sender_dashboard()))
            if ids.payment_id is not None:
                targets.append(ViewTarget(ViewKeys.payment(ids.payment_id)))

        elif kind in ESCROW_LEVEL_MUTATIONS:
            if escrow_id is None:
                raise ValueError(f"{kind.value} requires an escrow_id")
            targets.append(ViewTarget(ViewKeys.escrow(escrow_id), exact=True))
            targets.extend(_summaries(escrow_id, SUMMARY_VIEWERS, refetch=True))
            targets.append(ViewTarget(ViewKeys.milestones(escrow_id)))
            targets.extend(_proof_list_targets(escrow_id, cache))
            targets.append(ViewTarget(ViewKeys.escrows_list_base()))

        elif kind is MutationKind.ESCROW_CREATE:
            targets.append(ViewTarget(ViewKeys.escrows_list_base()))
            targets.append(ViewTarget(ViewKeys.sender_dashboard()))

        elif kind in (MutationKind.EXTERNAL_TOKEN_ISSUE, MutationKind.EXTERNAL_TOKEN_REVOKE):
            if escrow_id is not None:
                targets.append(ViewTarget(ViewKeys.external_tokens(escrow_id)))
            else:
                targets.append(ViewTarget(("externalProofTokens", "list")))
            if ids.token_id is not None:
                targets.append(ViewTarget(ViewKeys.external_token(ids.token_id), exact=True))

        return frozenset(targets)

    def affected_keys(self, kind: MutationKind, ids: EntityIds, cache: Optional[ViewCache] = None) -> Set[ViewKey]:
        return {target.key for target in self.affected_views(kind, ids, cache)}

    async def apply(self, kind: MutationKind, ids: EntityIds, cache: ViewCache) -> List[ViewKey]:
        """Invalidate every affected view and eagerly refetch the ones marked for it"""
        targets = self.affected_views(kind, ids, cache)
        marked: List[ViewKey] = []
        for target in targets:
            marked.extend(cache.invalidate(target.key, exact=target.exact))

        logger.info(
            f"🔄 VIEWS_INVALIDATED: {kind.value} escrow={ids.escrow_id} -> {len(marked)} cached view(s)"
        )

        for target in targets:
            if not target.refetch or not cache.contains(target.key):
                continue
            try:
                await cache.refetch(target.key)
            except Exception as e:
                # The view stays stale and reloads on next read
                logger.warning(f"⚠️ EAGER_REFETCH_FAILED: {target.key!r}: {e}")
        return marked


def rules_table() -> Dict[MutationKind, FrozenSet[ViewKey]]:
    """The invalidation table for a sample escrow; handy for audits and tests"""
    graph = ConsistencyGraph()
    sample = EntityIds(escrow_id="{escrow}", proof_id="{proof}", payment_id="{payment}", token_id="{token}")
    return {kind: frozenset(graph.affected_keys(kind, sample)) for kind in MutationKind}


# Global instance
consistency_graph = ConsistencyGraph()
