"""
Action Authority
================

Computes which actions a viewer may attempt on an escrow, given their relation,
the actions the backend advertises, and the statuses of the targeted entities.

This is the single dispatch point for relation-based behaviour. It is a fast path
for hiding affordances and pre-validating requests; the backend still rejects
anything it does not authorize.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from models import (
    EntityKind,
    EscrowStatus,
    MilestoneStatus,
    PaymentStatus,
    ProofStatus,
    UnrecognizedStatusError,
    ViewerContext,
    ViewerRelation,
)
from utils.api_errors import ActionNotPermittedError
from utils.status_ledger import StatusLedger, status_ledger

logger = logging.getLogger(__name__)


class Action(Enum):
    """Known action vocabulary, as advertised in viewer_context.allowed_actions"""
    VIEW_SUMMARY = "VIEW_SUMMARY"
    VIEW_PROOFS = "VIEW_PROOFS"
    VIEW_PAYMENTS = "VIEW_PAYMENTS"
    FUND_ESCROW = "FUND_ESCROW"
    MARK_DELIVERED = "MARK_DELIVERED"
    CLIENT_APPROVE = "CLIENT_APPROVE"
    CLIENT_REJECT = "CLIENT_REJECT"
    CHECK_DEADLINE = "CHECK_DEADLINE"
    UPLOAD_PROOF_FILE = "UPLOAD_PROOF_FILE"
    SUBMIT_PROOF = "SUBMIT_PROOF"
    DECIDE_PROOF = "DECIDE_PROOF"
    REQUEST_ADVISOR_REVIEW = "REQUEST_ADVISOR_REVIEW"
    EXECUTE_PAYMENT = "EXECUTE_PAYMENT"
    ISSUE_EXTERNAL_TOKEN = "ISSUE_EXTERNAL_TOKEN"
    REVOKE_EXTERNAL_TOKEN = "REVOKE_EXTERNAL_TOKEN"


VIEW_ACTIONS: FrozenSet[Action] = frozenset({
    Action.VIEW_SUMMARY,
    Action.VIEW_PROOFS,
    Action.VIEW_PAYMENTS,
})

# Closed relation table: mutating actions each relation may ever attempt
RELATION_ACTIONS: Dict[ViewerRelation, FrozenSet[Action]] = {
    ViewerRelation.SENDER: frozenset({
        Action.FUND_ESCROW,
        Action.MARK_DELIVERED,
        Action.CLIENT_APPROVE,
        Action.CLIENT_REJECT,
        Action.CHECK_DEADLINE,
        Action.DECIDE_PROOF,
        Action.REQUEST_ADVISOR_REVIEW,
        Action.ISSUE_EXTERNAL_TOKEN,
        Action.REVOKE_EXTERNAL_TOKEN,
    }),
    ViewerRelation.PROVIDER: frozenset({
        Action.UPLOAD_PROOF_FILE,
        Action.SUBMIT_PROOF,
        Action.MARK_DELIVERED,
    }),
    ViewerRelation.PARTICIPANT: frozenset({
        Action.UPLOAD_PROOF_FILE,
        Action.SUBMIT_PROOF,
    }),
    ViewerRelation.OPS: frozenset({
        Action.DECIDE_PROOF,
        Action.EXECUTE_PAYMENT,
        Action.CHECK_DEADLINE,
        Action.ISSUE_EXTERNAL_TOKEN,
        Action.REVOKE_EXTERNAL_TOKEN,
        Action.REQUEST_ADVISOR_REVIEW,
    }),
    ViewerRelation.UNKNOWN: frozenset(),
}


def parse_action(raw) -> Optional[Action]:
    if isinstance(raw, Action):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return Action(raw.strip().upper())
    except ValueError:
        return None


class ActionAuthority:
    """Relation and status based action gating"""

    def __init__(self, ledger: Optional[StatusLedger] = None):
        self.ledger = ledger or status_ledger

    # ------------------------------------------------------------------
    # Status gates
    # ------------------------------------------------------------------

    def _awaiting_proof(self, milestone_status: MilestoneStatus) -> bool:
        if milestone_status is MilestoneStatus.WAITING:
            return True
        return (
            milestone_status is MilestoneStatus.REJECTED
            and self.ledger.rejected_milestone_resubmittable
        )

    def _escrow_open(self, escrow_status: EscrowStatus) -> bool:
        return not self.ledger.is_terminal(EntityKind.ESCROW, escrow_status)

    def status_gate(self, action: Action, statuses: Mapping[EntityKind, Enum]) -> bool:
        """
        Check the status precondition of an action.

        Only the entity kinds present in `statuses` are checked; a gate on a kind
        that is not known passes, and the backend remains the final judge.
        """
        escrow = statuses.get(EntityKind.ESCROW)
        milestone = statuses.get(EntityKind.MILESTONE)
        proof = statuses.get(EntityKind.PROOF)
        payment = statuses.get(EntityKind.PAYMENT)

        if action in VIEW_ACTIONS or action is Action.REVOKE_EXTERNAL_TOKEN:
            return True

        if action is Action.FUND_ESCROW:
            return escrow is None or escrow in (EscrowStatus.DRAFT, EscrowStatus.ACTIVE)

        if action is Action.MARK_DELIVERED:
            return escrow is None or escrow is EscrowStatus.FUNDED

        if action is Action.CHECK_DEADLINE:
            return escrow is None or self._escrow_open(escrow)

        if action in (Action.CLIENT_APPROVE, Action.CLIENT_REJECT, Action.DECIDE_PROOF):
            if proof is not None and proof is not ProofStatus.PENDING:
                return False
            if milestone is not None and milestone is not MilestoneStatus.PENDING_REVIEW:
                return False
            return escrow is None or self._escrow_open(escrow)

        if action is Action.REQUEST_ADVISOR_REVIEW:
            return proof is None or proof is ProofStatus.PENDING

        if action in (Action.UPLOAD_PROOF_FILE, Action.SUBMIT_PROOF):
            if escrow is not None and escrow not in (EscrowStatus.FUNDED, EscrowStatus.RELEASABLE):
                return False
            return milestone is None or self._awaiting_proof(milestone)

        if action is Action.ISSUE_EXTERNAL_TOKEN:
            if escrow is not None and not self._escrow_open(escrow):
                return False
            return milestone is None or self._awaiting_proof(milestone)

        if action is Action.EXECUTE_PAYMENT:
            return payment is None or payment is PaymentStatus.PENDING

        return False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def relation_permits(self, relation: ViewerRelation, action: Action) -> bool:
        if relation is ViewerRelation.UNKNOWN:
            return False
        if action in VIEW_ACTIONS:
            return True
        return action in RELATION_ACTIONS.get(relation, frozenset())

    def explain(self, ctx: ViewerContext, action) -> Optional[str]:
        """Return why the action is refused, or None when it is permitted"""
        parsed = parse_action(action)
        if parsed is None:
            return f"unknown action {action!r}"
        if ctx.relation is ViewerRelation.UNKNOWN:
            return "viewer relation unknown"
        if parsed in VIEW_ACTIONS:
            return None
        if parsed.value not in ctx.allowed_actions:
            return "not advertised by backend"
        if not self.relation_permits(ctx.relation, parsed):
            return f"relation {ctx.relation.value} cannot {parsed.value}"
        try:
            if not self.status_gate(parsed, ctx.statuses):
                return "current status does not allow it"
        except UnrecognizedStatusError as e:
            return str(e)
        return None

    def can_action(self, ctx: ViewerContext, action) -> bool:
        """True only when advertised, permitted for the relation, and status-eligible"""
        return self.explain(ctx, action) is None

    def permitted_actions(self, ctx: ViewerContext) -> FrozenSet[Action]:
        return frozenset(action for action in Action if self.can_action(ctx, action))

    def derive_actions(self, relation: ViewerRelation, statuses: Mapping[EntityKind, Enum]) -> FrozenSet[Action]:
        """Actions the client would expect the backend to advertise, computed locally"""
        result = set()
        for action in Action:
            if not self.relation_permits(relation, action):
                continue
            if self.status_gate(action, statuses):
                result.add(action)
        return frozenset(result)

    def unexpected_actions(self, ctx: ViewerContext) -> FrozenSet[str]:
        """Advertised actions the local model would not grant; logged as a drift signal"""
        expected = {a.value for a in self.derive_actions(ctx.relation, ctx.statuses)}
        drift = frozenset(a for a in ctx.allowed_actions if a not in expected)
        if drift:
            logger.warning(
                f"⚠️ ACTION_DRIFT: backend advertises {sorted(drift)} for relation {ctx.relation.value}"
            )
        return drift

    def require_action(self, ctx: ViewerContext, action, target: Optional[str] = None) -> Action:
        """Raise ActionNotPermittedError unless the action may be attempted"""
        reason = self.explain(ctx, action)
        if reason is not None:
            logger.info(f"🔐 ACTION_REFUSED: {getattr(action, 'value', action)} on {target or 'escrow'}: {reason}")
            raise ActionNotPermittedError(action, reason)
        return parse_action(action)


def context_from_roles(relation: ViewerRelation, allowed: Iterable, statuses=None) -> ViewerContext:
    """Build a viewer context locally, e.g. for views not backed by a summary"""
    actions = frozenset(getattr(a, "value", str(a)).upper() for a in allowed)
    return ViewerContext(relation=relation, allowed_actions=actions, statuses=dict(statuses or {}))


# Global instance
action_authority = ActionAuthority()
