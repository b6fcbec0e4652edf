"""
Status Ledger
=============

Single source of truth for which statuses exist per entity kind, which of them are
terminal, and which transitions are legal.

The backend is authoritative for actual transitions; the ledger is used for
client-side sanity checks, polling decisions and action gating. Unknown statuses
raise UnrecognizedStatusError instead of silently counting as non-terminal, so a
status introduced by a newer backend is handled explicitly.
"""

import logging
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from config import Config
from models import (
    EntityKind,
    EscrowStatus,
    MilestoneStatus,
    ProofStatus,
    PaymentStatus,
    ExternalProofTokenStatus,
    STATUS_ENUMS,
    UnrecognizedStatusError,
    parse_status as _parse_status,
)

logger = logging.getLogger(__name__)


class StatusLedger:
    """
    Transition graphs and terminal sets for escrows, milestones, proofs,
    payments and external proof tokens.

    Whether a REJECTED milestone can be reopened by a new proof is a policy
    switch; when it cannot, REJECTED is terminal.
    """

    ESCROW_TRANSITIONS: Dict[EscrowStatus, FrozenSet[EscrowStatus]] = {
        # DRAFT: created, awaiting confirmation
        EscrowStatus.DRAFT: frozenset({EscrowStatus.ACTIVE, EscrowStatus.CANCELLED}),
        # ACTIVE: confirmed, awaiting funds
        EscrowStatus.ACTIVE: frozenset({EscrowStatus.FUNDED, EscrowStatus.CANCELLED}),
        # FUNDED: funds held, milestones in progress
        EscrowStatus.FUNDED: frozenset({
            EscrowStatus.RELEASABLE,
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDED,
        }),
        EscrowStatus.RELEASABLE: frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED}),
        EscrowStatus.RELEASED: frozenset(),
        EscrowStatus.REFUNDED: frozenset(),
        EscrowStatus.CANCELLED: frozenset(),
    }

    MILESTONE_TRANSITIONS: Dict[MilestoneStatus, FrozenSet[MilestoneStatus]] = {
        MilestoneStatus.WAITING: frozenset({MilestoneStatus.PENDING_REVIEW}),
        MilestoneStatus.PENDING_REVIEW: frozenset({MilestoneStatus.APPROVED, MilestoneStatus.REJECTED}),
        MilestoneStatus.APPROVED: frozenset({MilestoneStatus.PAYING}),
        # A failed payout drops the milestone back to APPROVED for another attempt
        MilestoneStatus.PAYING: frozenset({MilestoneStatus.PAID, MilestoneStatus.APPROVED}),
        MilestoneStatus.REJECTED: frozenset({MilestoneStatus.PENDING_REVIEW}),
        MilestoneStatus.PAID: frozenset(),
    }

    PROOF_TRANSITIONS: Dict[ProofStatus, FrozenSet[ProofStatus]] = {
        ProofStatus.PENDING: frozenset({ProofStatus.APPROVED, ProofStatus.REJECTED}),
        ProofStatus.APPROVED: frozenset(),
        ProofStatus.REJECTED: frozenset(),
    }

    PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
        PaymentStatus.PENDING: frozenset({PaymentStatus.SENT, PaymentStatus.ERROR}),
        PaymentStatus.SENT: frozenset({PaymentStatus.SETTLED, PaymentStatus.ERROR, PaymentStatus.REFUNDED}),
        PaymentStatus.SETTLED: frozenset(),
        PaymentStatus.ERROR: frozenset(),
        PaymentStatus.REFUNDED: frozenset(),
    }

    TOKEN_TRANSITIONS: Dict[ExternalProofTokenStatus, FrozenSet[ExternalProofTokenStatus]] = {
        ExternalProofTokenStatus.ACTIVE: frozenset({
            ExternalProofTokenStatus.EXPIRED,
            ExternalProofTokenStatus.REVOKED,
            ExternalProofTokenStatus.USED,
        }),
        ExternalProofTokenStatus.EXPIRED: frozenset(),
        ExternalProofTokenStatus.REVOKED: frozenset(),
        ExternalProofTokenStatus.USED: frozenset(),
    }

    def __init__(self, rejected_milestone_resubmittable: Optional[bool] = None):
        if rejected_milestone_resubmittable is None:
            rejected_milestone_resubmittable = Config.MILESTONE_REJECTED_RESUBMITTABLE
        self.rejected_milestone_resubmittable = rejected_milestone_resubmittable

        milestone_graph = dict(self.MILESTONE_TRANSITIONS)
        if not rejected_milestone_resubmittable:
            milestone_graph[MilestoneStatus.REJECTED] = frozenset()

        self._graphs: Dict[EntityKind, Dict[Enum, FrozenSet[Enum]]] = {
            EntityKind.ESCROW: self.ESCROW_TRANSITIONS,
            EntityKind.MILESTONE: milestone_graph,
            EntityKind.PROOF: self.PROOF_TRANSITIONS,
            EntityKind.PAYMENT: self.PAYMENT_TRANSITIONS,
            EntityKind.EXTERNAL_PROOF_TOKEN: self.TOKEN_TRANSITIONS,
        }

    def parse_status(self, entity_kind: EntityKind, raw: Any) -> Enum:
        """Map a raw status value (case-insensitive) to its enum member"""
        return _parse_status(entity_kind, raw)

    def _resolve(self, entity_kind: EntityKind, status: Any) -> Enum:
        member = _parse_status(entity_kind, status)
        if member not in self._graphs[entity_kind]:
            raise UnrecognizedStatusError(entity_kind, status)
        return member

    def is_terminal(self, entity_kind: EntityKind, status: Any) -> bool:
        """Check if a status is terminal; unknown statuses raise UnrecognizedStatusError"""
        member = self._resolve(entity_kind, status)
        return not self._graphs[entity_kind][member]

    def terminal_statuses(self, entity_kind: EntityKind) -> FrozenSet[Enum]:
        graph = self._graphs[entity_kind]
        return frozenset(status for status, nexts in graph.items() if not nexts)

    def legal_next(self, entity_kind: EntityKind, status: Any) -> FrozenSet[Enum]:
        """Get all statuses reachable in one step from the given status"""
        member = self._resolve(entity_kind, status)
        return self._graphs[entity_kind][member]

    def validate_transition(
        self,
        entity_kind: EntityKind,
        current: Any,
        target: Any,
        entity_id: Optional[str] = None
    ) -> Tuple[bool, str]:
        """
        Validate if a status transition is allowed.

        Args:
            entity_kind: Kind of entity being transitioned
            current: Current status (enum member or raw string)
            target: Desired status (enum member or raw string)
            entity_id: Entity ID for logging (optional)

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"{entity_kind.value} {entity_id}" if entity_id else entity_kind.value
        try:
            from_status = self._resolve(entity_kind, current)
            to_status = self._resolve(entity_kind, target)
        except UnrecognizedStatusError as e:
            logger.warning(f"⚠️ UNRECOGNIZED_STATUS: {ref}: {e}")
            return False, str(e)

        if from_status == to_status:
            return True, "No status change required"

        valid_next = self._graphs[entity_kind][from_status]
        if to_status in valid_next:
            logger.debug(f"✅ VALID_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: "
            f"{sorted(s.value for s in valid_next)}"
        )
        logger.warning(f"❌ INVALID_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
        return False, error_msg

    def all_statuses(self, entity_kind: EntityKind) -> FrozenSet[Enum]:
        return frozenset(STATUS_ENUMS[entity_kind])


# Global instance using the configured milestone resubmission policy
status_ledger = StatusLedger()
