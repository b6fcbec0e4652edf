"""
Escrow Release Client - Domain Model
====================================

Client-side shapes for everything the backend exposes:
- Escrows, sequenced milestones, proofs and payments as observed through the REST contract
- The per-request viewer context (relation + advertised actions)
- External proof token metadata (the secret itself never lives here)
- Local SQLAlchemy tables for client-held state (idempotency keys, token handoff)

Entity records are immutable snapshots. A fresh fetch replaces them, nothing mutates them in place.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from sqlalchemy import Column, Integer, String, Text, DateTime, Index, func
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for local store models"""
    pass


# ============================================================================
# ERRORS
# ============================================================================

class InvariantViolationError(ValueError):
    """Raised when an entity or a plan breaks a data model invariant"""
    pass


class UnrecognizedStatusError(ValueError):
    """Raised for a status value the client does not know about"""

    def __init__(self, entity_kind: "EntityKind", status: Any):
        self.entity_kind = entity_kind
        self.status = status
        super().__init__(f"Unrecognized {entity_kind.value} status: {status!r}")


# ============================================================================
# ENUMS - Lifecycle Constants
# ============================================================================

class EntityKind(Enum):
    """Kinds of entity whose status the client tracks"""
    ESCROW = "escrow"
    MILESTONE = "milestone"
    PROOF = "proof"
    PAYMENT = "payment"
    EXTERNAL_PROOF_TOKEN = "external_proof_token"


class EscrowStatus(Enum):
    """Escrow lifecycle states"""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    FUNDED = "FUNDED"
    RELEASABLE = "RELEASABLE"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class MilestoneStatus(Enum):
    """Milestone lifecycle states"""
    WAITING = "WAITING"
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAYING = "PAYING"
    PAID = "PAID"


class ProofStatus(Enum):
    """Externally observable proof states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PaymentStatus(Enum):
    """Payment (fund movement) states"""
    PENDING = "PENDING"
    SENT = "SENT"
    SETTLED = "SETTLED"
    ERROR = "ERROR"
    REFUNDED = "REFUNDED"


class ExternalProofTokenStatus(Enum):
    """External proof token states"""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    USED = "USED"


class PaymentMode(Enum):
    MILESTONE = "MILESTONE"
    DIRECT_PAY = "DIRECT_PAY"


class ViewerRelation(Enum):
    """Caller's relation to an escrow"""
    SENDER = "SENDER"
    PROVIDER = "PROVIDER"
    PARTICIPANT = "PARTICIPANT"
    OPS = "OPS"
    UNKNOWN = "UNKNOWN"


class ProofDecision(Enum):
    APPROVE = "approve"
    REJECT = "reject"


STATUS_ENUMS: Dict[EntityKind, Type[Enum]] = {
    EntityKind.ESCROW: EscrowStatus,
    EntityKind.MILESTONE: MilestoneStatus,
    EntityKind.PROOF: ProofStatus,
    EntityKind.PAYMENT: PaymentStatus,
    EntityKind.EXTERNAL_PROOF_TOKEN: ExternalProofTokenStatus,
}

# Relation spellings seen across backend versions
RELATION_ALIASES: Dict[str, ViewerRelation] = {
    "SENDER": ViewerRelation.SENDER,
    "CLIENT": ViewerRelation.SENDER,
    "OWNER": ViewerRelation.SENDER,
    "PROVIDER": ViewerRelation.PROVIDER,
    "BENEFICIARY_PROVIDER": ViewerRelation.PROVIDER,
    "PARTICIPANT": ViewerRelation.PARTICIPANT,
    "BENEFICIARY": ViewerRelation.PARTICIPANT,
    "ADVISOR": ViewerRelation.PARTICIPANT,
    "OPS": ViewerRelation.OPS,
    "ADMIN": ViewerRelation.OPS,
    "SUPPORT": ViewerRelation.OPS,
}


# ============================================================================
# PARSING HELPERS
# ============================================================================

def parse_status(entity_kind: EntityKind, raw: Any) -> Enum:
    """Map a raw status (enum member or case-insensitive string) to its enum member"""
    enum_cls = STATUS_ENUMS[entity_kind]
    if isinstance(raw, enum_cls):
        return raw
    if isinstance(raw, Enum):
        raw = raw.value
    if not isinstance(raw, str) or not raw.strip():
        raise UnrecognizedStatusError(entity_kind, raw)
    try:
        return enum_cls(raw.strip().upper())
    except ValueError:
        raise UnrecognizedStatusError(entity_kind, raw)


def parse_relation(raw: Any) -> ViewerRelation:
    if isinstance(raw, ViewerRelation):
        return raw
    if not isinstance(raw, str):
        return ViewerRelation.UNKNOWN
    return RELATION_ALIASES.get(raw.strip().upper(), ViewerRelation.UNKNOWN)


def parse_decimal(raw: Any, field_name: str = "amount") -> Decimal:
    if raw is None:
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise InvariantViolationError(f"{field_name} is not a valid decimal: {raw!r}")


def parse_datetime(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC"""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw
    else:
        value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _opt_str(raw: Any) -> Optional[str]:
    return None if raw is None or raw == "" else str(raw)


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass(frozen=True)
class EscrowDestination:
    """Where released funds go: a platform provider XOR an off-platform beneficiary"""
    provider_user_id: Optional[str] = None
    beneficiary_profile_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.provider_user_id) == bool(self.beneficiary_profile_id):
            raise InvariantViolationError(
                "Escrow destination must be exactly one of provider or beneficiary"
            )

    @property
    def is_off_platform(self) -> bool:
        return bool(self.beneficiary_profile_id)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["EscrowDestination"]:
        provider = _opt_str(payload.get("provider_user_id") or payload.get("provider_id"))
        beneficiary = _opt_str(payload.get("beneficiary_profile_id") or payload.get("beneficiary_id"))
        if provider is None and beneficiary is None:
            # Not exposed to this viewer
            return None
        return cls(provider_user_id=provider, beneficiary_profile_id=beneficiary)


@dataclass(frozen=True)
class Escrow:
    id: str
    status: EscrowStatus
    amount_total: Decimal
    currency: str
    deadline: Optional[datetime] = None
    payment_mode: PaymentMode = PaymentMode.MILESTONE
    destination: Optional[EscrowDestination] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Escrow":
        # Older payloads carry escrow_status instead of status
        raw_status = payload.get("status", payload.get("escrow_status"))
        raw_mode = str(payload.get("payment_mode") or PaymentMode.MILESTONE.value).upper()
        return cls(
            id=str(payload["id"]),
            status=parse_status(EntityKind.ESCROW, raw_status),
            amount_total=parse_decimal(payload.get("amount_total", payload.get("amount")), "amount_total"),
            currency=str(payload.get("currency") or "").upper(),
            deadline=parse_datetime(payload.get("deadline_at", payload.get("deadline"))),
            payment_mode=PaymentMode(raw_mode) if raw_mode in PaymentMode._value2member_map_ else PaymentMode.MILESTONE,
            destination=EscrowDestination.from_payload(payload),
            created_at=parse_datetime(payload.get("created_at")),
            updated_at=parse_datetime(payload.get("updated_at")),
        )


@dataclass(frozen=True)
class Milestone:
    id: str
    escrow_id: str
    sequence_index: int
    amount: Decimal
    currency: str
    status: MilestoneStatus
    label: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], escrow_id: Optional[str] = None) -> "Milestone":
        raw_index = payload.get("sequence_index", payload.get("milestone_idx", payload.get("idx")))
        return cls(
            id=str(payload["id"]),
            escrow_id=str(payload.get("escrow_id", escrow_id)),
            sequence_index=int(raw_index) if raw_index is not None else 0,
            amount=parse_decimal(payload.get("amount"), "milestone amount"),
            currency=str(payload.get("currency") or "").upper(),
            status=parse_status(EntityKind.MILESTONE, payload.get("status")),
            label=_opt_str(payload.get("label") or payload.get("name")),
        )


@dataclass(frozen=True)
class ProofAiAnalysis:
    """Advisory fraud/AI scoring; never gates a transition by itself"""
    risk_level: Optional[str] = None
    score: Optional[float] = None
    flags: Tuple[str, ...] = ()
    explanation: Optional[str] = None
    reviewed_by: Optional[str] = None
    checked_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProofAiAnalysis":
        score = payload.get("ai_score")
        flags = payload.get("ai_flags") or ()
        return cls(
            risk_level=_opt_str(payload.get("ai_risk_level")),
            score=float(score) if score is not None else None,
            flags=tuple(str(flag) for flag in flags) if isinstance(flags, (list, tuple)) else (),
            explanation=_opt_str(payload.get("ai_explanation")),
            reviewed_by=_opt_str(payload.get("ai_reviewed_by")),
            checked_at=parse_datetime(payload.get("ai_checked_at")),
        )


@dataclass(frozen=True)
class Proof:
    id: str
    escrow_id: str
    status: ProofStatus
    milestone_id: Optional[str] = None
    milestone_idx: Optional[int] = None
    review_mode: Optional[str] = None
    description: Optional[str] = None
    attachment_url: Optional[str] = None
    file_id: Optional[str] = None
    created_at: Optional[datetime] = None
    ai: ProofAiAnalysis = field(default_factory=ProofAiAnalysis)

    @property
    def is_decided(self) -> bool:
        return self.status in (ProofStatus.APPROVED, ProofStatus.REJECTED)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Proof":
        raw_idx = payload.get("milestone_idx")
        return cls(
            id=str(payload.get("id", payload.get("proof_id"))),
            escrow_id=str(payload["escrow_id"]),
            status=parse_status(EntityKind.PROOF, payload.get("status")),
            milestone_id=_opt_str(payload.get("milestone_id")),
            milestone_idx=int(raw_idx) if raw_idx is not None else None,
            review_mode=_opt_str(payload.get("review_mode")),
            description=_opt_str(payload.get("description")),
            attachment_url=_opt_str(payload.get("attachment_url")),
            file_id=_opt_str(payload.get("file_id")),
            created_at=parse_datetime(payload.get("created_at")),
            ai=ProofAiAnalysis.from_payload(payload),
        )


@dataclass(frozen=True)
class Payment:
    id: str
    escrow_id: str
    status: PaymentStatus
    amount: Decimal = Decimal("0")
    currency: str = ""
    milestone_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Payment":
        return cls(
            id=str(payload["id"]),
            escrow_id=str(payload["escrow_id"]),
            status=parse_status(EntityKind.PAYMENT, payload.get("status")),
            amount=parse_decimal(payload.get("amount"), "payment amount"),
            currency=str(payload.get("currency") or "").upper(),
            milestone_id=_opt_str(payload.get("milestone_id")),
            idempotency_key=_opt_str(payload.get("idempotency_key")),
            created_at=parse_datetime(payload.get("created_at")),
        )


@dataclass(frozen=True)
class ViewerContext:
    """
    The caller's relation to one escrow plus the actions the backend advertises.

    Rebuilt from every summary fetch and never persisted. A missing or malformed
    allowed_actions list is read as empty.
    """
    relation: ViewerRelation = ViewerRelation.UNKNOWN
    allowed_actions: frozenset = frozenset()
    statuses: Mapping[EntityKind, Enum] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any, statuses: Optional[Mapping[EntityKind, Enum]] = None) -> "ViewerContext":
        if not isinstance(payload, Mapping):
            return cls(statuses=dict(statuses or {}))
        raw_actions = payload.get("allowed_actions")
        if isinstance(raw_actions, (list, tuple)) and all(isinstance(a, str) for a in raw_actions):
            actions = frozenset(a.strip().upper() for a in raw_actions)
        else:
            actions = frozenset()
        return cls(
            relation=parse_relation(payload.get("relation")),
            allowed_actions=actions,
            statuses=dict(statuses or {}),
        )

    def with_statuses(self, statuses: Mapping[EntityKind, Enum]) -> "ViewerContext":
        merged = dict(self.statuses)
        merged.update(statuses)
        return ViewerContext(relation=self.relation, allowed_actions=self.allowed_actions, statuses=merged)


@dataclass(frozen=True)
class EscrowSummary:
    escrow: Escrow
    milestones: Tuple[Milestone, ...]
    proofs: Tuple[Proof, ...]
    payments: Tuple[Payment, ...]
    viewer_context: ViewerContext
    current_submittable_milestone_id: Optional[str] = None
    current_submittable_milestone_idx: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EscrowSummary":
        escrow = Escrow.from_payload(payload["escrow"])
        milestones = tuple(
            Milestone.from_payload(item, escrow_id=escrow.id) for item in payload.get("milestones") or ()
        )
        proofs = tuple(Proof.from_payload(item) for item in payload.get("proofs") or ())
        payments = tuple(Payment.from_payload(item) for item in payload.get("payments") or ())
        raw_idx = payload.get("current_submittable_milestone_idx")
        summary = cls(
            escrow=escrow,
            milestones=milestones,
            proofs=proofs,
            payments=payments,
            viewer_context=ViewerContext.from_payload(payload.get("viewer_context")),
            current_submittable_milestone_id=_opt_str(payload.get("current_submittable_milestone_id")),
            current_submittable_milestone_idx=int(raw_idx) if raw_idx is not None else None,
        )
        return summary

    def milestone_by_index(self, sequence_index: int) -> Optional[Milestone]:
        for milestone in self.milestones:
            if milestone.sequence_index == sequence_index:
                return milestone
        return None

    def context_for(self, milestone_idx: Optional[int] = None, proof_id: Optional[str] = None,
                    payment_id: Optional[str] = None) -> ViewerContext:
        """Viewer context carrying the statuses of the entities an action targets"""
        statuses: Dict[EntityKind, Enum] = {EntityKind.ESCROW: self.escrow.status}
        if milestone_idx is None:
            milestone_idx = self.current_submittable_milestone_idx
        milestone = self.milestone_by_index(milestone_idx) if milestone_idx is not None else None
        if milestone is not None:
            statuses[EntityKind.MILESTONE] = milestone.status
        if proof_id is not None:
            for proof in self.proofs:
                if proof.id == str(proof_id):
                    statuses[EntityKind.PROOF] = proof.status
        if payment_id is not None:
            for payment in self.payments:
                if payment.id == str(payment_id):
                    statuses[EntityKind.PAYMENT] = payment.status
        return self.viewer_context.with_statuses(statuses)


@dataclass(frozen=True)
class ExternalProofTokenTarget:
    escrow_id: str
    milestone_idx: int
    beneficiary_profile_id: Optional[str] = None

    def matches(self, escrow_id: Any, milestone_idx: Any) -> bool:
        try:
            return str(escrow_id) == self.escrow_id and int(milestone_idx) == self.milestone_idx
        except (TypeError, ValueError):
            return False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ExternalProofTokenTarget":
        return cls(
            escrow_id=str(payload["escrow_id"]),
            milestone_idx=int(payload["milestone_idx"]),
            beneficiary_profile_id=_opt_str(payload.get("beneficiary_profile_id")),
        )


@dataclass(frozen=True)
class ExternalProofToken:
    """Token metadata as listed/inspected by the issuer; carries no secret"""
    token_id: str
    status: ExternalProofTokenStatus
    target: ExternalProofTokenTarget
    expires_at: Optional[datetime] = None
    max_uploads: int = 1
    uploads_used: int = 0
    issued_to_email: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExternalProofTokenStatus.ACTIVE

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ExternalProofToken":
        # The one-time "token" field is deliberately never read here
        target = payload.get("target") or {
            "escrow_id": payload.get("escrow_id"),
            "milestone_idx": payload.get("milestone_idx"),
        }
        return cls(
            token_id=str(payload["token_id"]),
            status=parse_status(EntityKind.EXTERNAL_PROOF_TOKEN, payload.get("status")),
            target=ExternalProofTokenTarget.from_payload(target),
            expires_at=parse_datetime(payload.get("expires_at")),
            max_uploads=int(payload.get("max_uploads") or 1),
            uploads_used=int(payload.get("uploads_used", payload.get("upload_count")) or 0),
            issued_to_email=_opt_str(payload.get("issued_to_email")),
            note=_opt_str(payload.get("note")),
            created_at=parse_datetime(payload.get("created_at")),
            last_used_at=parse_datetime(payload.get("last_used_at")),
            revoked_at=parse_datetime(payload.get("revoked_at")),
        )


# ============================================================================
# INVARIANTS
# ============================================================================

def validate_milestone_plan(escrow: Escrow, milestones: Iterable[Milestone]) -> Tuple[bool, List[str]]:
    """
    Check the milestone plan of an escrow.

    Returns (is_valid, problems). Rules: amounts sum to at most the escrow total,
    every milestone uses the escrow currency, sequence indexes are unique and > 0.
    """
    problems: List[str] = []
    total = Decimal("0")
    seen_indexes = set()
    for milestone in milestones:
        total += milestone.amount
        if milestone.amount < 0:
            problems.append(f"milestone {milestone.sequence_index}: negative amount")
        if milestone.currency != escrow.currency:
            problems.append(
                f"milestone {milestone.sequence_index}: currency {milestone.currency} != {escrow.currency}"
            )
        if milestone.sequence_index <= 0:
            problems.append(f"milestone {milestone.id}: sequence_index must be positive")
        elif milestone.sequence_index in seen_indexes:
            problems.append(f"milestone {milestone.id}: duplicate sequence_index {milestone.sequence_index}")
        seen_indexes.add(milestone.sequence_index)
    if total > escrow.amount_total:
        problems.append(f"milestone amounts {total} exceed escrow total {escrow.amount_total}")
    return len(problems) == 0, problems


# ============================================================================
# LOCAL STORE TABLES
# ============================================================================

class IdempotencyKey(Base):
    """Stable idempotency key per logical user intent, reused across automatic retries"""
    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True)
    intent = Column(String(255), unique=True, nullable=False)
    idempotency_key = Column(String(64), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_idempotency_keys_expires", "expires_at"),
    )

    def __repr__(self):
        return f"<IdempotencyKey(intent={self.intent})>"


class ExternalTokenHandoff(Base):
    """Bearer secret received through a one-time handoff link, held until terminal"""
    __tablename__ = "external_token_handoffs"

    id = Column(Integer, primary_key=True)
    fingerprint = Column(String(64), unique=True, nullable=False)
    secret = Column(Text, nullable=False)
    escrow_id = Column(String(64), nullable=True)
    milestone_idx = Column(Integer, nullable=True)
    stored_at = Column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self):
        # Never include the secret
        return f"<ExternalTokenHandoff(fingerprint={self.fingerprint[:8]}, escrow_id={self.escrow_id})>"
