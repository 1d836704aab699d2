"""
Domain model for multi-signature consensus.

The Wallet is the aggregate root: it owns the signer roster, the quorum
policy, every operation ever initiated against it (operations are never
deleted, resolution is a status change) and rolling statistics. All
mutation happens on a loaded snapshot that is written back with an
expected ``version`` (see ``multisig_consensus.store``).

Operation state machine:

    PENDING --(quorum)--------> APPROVED --(explicit)--> EXECUTED
    PENDING --(privileged veto)--> REJECTED
    PENDING --(time)----------> EXPIRED

Every other transition fails closed with InvalidStateError.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    PolicyError,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationStatus(str, Enum):
    """Lifecycle status of a gated operation."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    EXECUTED = "executed"


VALID_TRANSITIONS: Dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({
        OperationStatus.APPROVED,
        OperationStatus.REJECTED,
        OperationStatus.EXPIRED,
    }),
    OperationStatus.APPROVED: frozenset({OperationStatus.EXECUTED}),
    OperationStatus.REJECTED: frozenset(),
    OperationStatus.EXPIRED: frozenset(),
    OperationStatus.EXECUTED: frozenset(),
}


class OperationType(str, Enum):
    """Kinds of high-value operations gated behind a quorum."""
    VIRTUAL_TRANSFER = "virtual_transfer"
    VAULT_WITHDRAWAL = "vault_withdrawal"
    POLICY_CHANGE = "policy_change"
    THRESHOLD_UPDATE = "threshold_update"
    EMERGENCY_OVERRIDE = "emergency_override"
    BULK_EXPENSE = "bulk_expense"
    TREASURY_REBALANCE = "treasury_rebalance"


class ProofType(str, Enum):
    """Authentication mechanism used to sign an operation."""
    PASSWORD = "password"
    TOTP = "totp"
    HARDWARE_KEY = "hardware_key"
    BIOMETRIC = "biometric"
    PKI = "pki"


STRONGEST_PROOF_TYPES: List[ProofType] = [ProofType.HARDWARE_KEY, ProofType.BIOMETRIC]


class SignerRole(str, Enum):
    """Role of an authorized signer."""
    OWNER = "owner"  # Full control, unilateral veto
    ADMIN = "admin"  # Unilateral veto
    SIGNER = "signer"


PRIVILEGED_ROLES = frozenset({SignerRole.OWNER, SignerRole.ADMIN})


class QuorumMode(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    THRESHOLD_BASED = "threshold_based"


@dataclass
class QuorumPolicy:
    """Default M-of-N configuration of a wallet."""
    m: int
    n: int
    mode: QuorumMode = QuorumMode.FIXED

    def validate(self) -> None:
        if self.m < 1 or self.n < 1 or self.m > self.n:
            raise PolicyError(
                f"Invalid default quorum {self.m}-of-{self.n}: require 1 <= m <= n",
                details={"m": self.m, "n": self.n},
            )


@dataclass
class ThresholdRule:
    """Amount tier that raises the quorum for larger operations."""
    min_amount: Decimal
    required_m: int
    required_proof_types: List[ProofType] = field(default_factory=lambda: [ProofType.PASSWORD])
    max_approval_hours: int = 24
    max_amount: Optional[Decimal] = None  # None = unlimited

    def applies_to(self, amount: Decimal) -> bool:
        if amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True


@dataclass
class AuthorizedSigner:
    """A user allowed to act on a wallet's operations."""
    user_id: str
    role: SignerRole = SignerRole.SIGNER
    can_initiate: bool = True
    can_approve: bool = True
    can_reject: bool = False
    # Proof types this signer must use; empty = any the operation accepts
    required_proof_types: List[ProofType] = field(default_factory=list)
    added_at: datetime = field(default_factory=utc_now)
    added_by: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


@dataclass
class Signature:
    """A verified approval of an operation. Immutable once appended."""
    signer_id: str
    signed_at: datetime
    signature_hash: str
    proof_type: ProofType
    verified: bool = True
    verified_at: Optional[datetime] = None
    verification_method: Optional[str] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer_id": self.signer_id,
            "signed_at": self.signed_at.isoformat(),
            "proof_type": self.proof_type.value,
            "verified": self.verified,
            "verification_method": self.verification_method,
        }


@dataclass
class Rejection:
    user_id: str
    rejected_at: datetime
    reason: str = ""
    role: SignerRole = SignerRole.SIGNER


@dataclass
class EscalationRecord:
    level: int
    escalated_at: datetime
    reason: str
    notified_users: List[str] = field(default_factory=list)


@dataclass
class QuorumSnapshot:
    """Frozen quorum state, written into audit records."""
    required: int
    collected: int
    remaining: int
    eligible: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required": self.required,
            "collected": self.collected,
            "remaining": self.remaining,
            "eligible": self.eligible,
        }


@dataclass
class Operation:
    """An operation pending (or resolved by) M-of-N approval."""
    operation_id: str
    workspace_id: str
    operation_type: OperationType
    payload: Dict[str, Any]
    amount: Decimal
    initiated_by: str
    initiated_at: datetime
    required_signatures: int
    total_eligible_signers: int
    expires_at: datetime
    threshold_percent: float = 0.0
    required_proof_types: List[ProofType] = field(default_factory=list)
    signatures: List[Signature] = field(default_factory=list)
    rejections: List[Rejection] = field(default_factory=list)
    status: OperationStatus = OperationStatus.PENDING
    escalation_level: int = 0
    last_escalated_at: Optional[datetime] = None
    escalation_history: List[EscalationRecord] = field(default_factory=list)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    executed_at: Optional[datetime] = None

    def verified_signatures(self) -> List[Signature]:
        return [s for s in self.signatures if s.verified]

    @property
    def collected_signatures(self) -> int:
        return len(self.verified_signatures())

    @property
    def remaining_needed(self) -> int:
        return max(0, self.required_signatures - self.collected_signatures)

    def has_signed(self, user_id: str) -> bool:
        return any(s.signer_id == user_id for s in self.signatures)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_quorum_reached(self) -> bool:
        return self.collected_signatures >= self.required_signatures

    def last_action_at(self) -> datetime:
        """Most recent escalation, else most recent signature, else initiation."""
        if self.last_escalated_at is not None:
            return self.last_escalated_at
        if self.signatures:
            return self.signatures[-1].signed_at
        return self.initiated_at

    def transition(self, new_status: OperationStatus) -> None:
        """Move to ``new_status`` or raise InvalidStateError, leaving state unchanged."""
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Illegal transition {self.status.value} -> {new_status.value}",
                operation_id=self.operation_id,
                current_status=self.status.value,
            )
        self.status = new_status

    def quorum_snapshot(self) -> QuorumSnapshot:
        collected = self.collected_signatures
        return QuorumSnapshot(
            required=self.required_signatures,
            collected=collected,
            remaining=max(0, self.required_signatures - collected),
            eligible=self.total_eligible_signers,
        )

    def summary(self, now: datetime) -> "OperationSummary":
        return OperationSummary(
            operation_id=self.operation_id,
            workspace_id=self.workspace_id,
            operation_type=self.operation_type,
            amount=self.amount,
            status=self.status,
            required_signatures=self.required_signatures,
            collected_signatures=self.collected_signatures,
            remaining_needed=self.remaining_needed,
            threshold_percent=self.threshold_percent,
            expires_at=self.expires_at,
            is_expired=self.is_expired(now),
            time_remaining_ms=max(0, int((self.expires_at - now).total_seconds() * 1000)),
            escalation_level=self.escalation_level,
            rejection_count=len(self.rejections),
            resolved_at=self.resolved_at,
            resolved_by=self.resolved_by,
            signers=[s.to_dict() for s in self.signatures],
        )


@dataclass
class OperationSummary:
    """Presentation-ready view of an operation for the interception layer."""
    operation_id: str
    workspace_id: str
    operation_type: OperationType
    amount: Decimal
    status: OperationStatus
    required_signatures: int
    collected_signatures: int
    remaining_needed: int
    threshold_percent: float
    expires_at: datetime
    is_expired: bool
    time_remaining_ms: int
    escalation_level: int
    rejection_count: int
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    signers: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "workspace_id": self.workspace_id,
            "operation_type": self.operation_type.value,
            "amount": str(self.amount),
            "status": self.status.value,
            "required_signatures": self.required_signatures,
            "collected_signatures": self.collected_signatures,
            "remaining_needed": self.remaining_needed,
            "threshold_percent": self.threshold_percent,
            "expires_at": self.expires_at.isoformat(),
            "is_expired": self.is_expired,
            "time_remaining_ms": self.time_remaining_ms,
            "escalation_level": self.escalation_level,
            "rejections": self.rejection_count,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "signers": self.signers,
        }


@dataclass
class WalletStats:
    total_operations: int = 0
    approved_operations: int = 0
    rejected_operations: int = 0
    expired_operations: int = 0
    average_approval_time_ms: float = 0.0

    def record_approval(self, approval_time_ms: float) -> None:
        """Count an approval and fold its latency into the running mean."""
        self.approved_operations += 1
        k = self.approved_operations
        self.average_approval_time_ms = (
            self.average_approval_time_ms * (k - 1) + approval_time_ms
        ) / k

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_operations": self.total_operations,
            "approved_operations": self.approved_operations,
            "rejected_operations": self.rejected_operations,
            "expired_operations": self.expired_operations,
            "average_approval_time_ms": self.average_approval_time_ms,
        }


@dataclass
class Wallet:
    """Per-workspace multi-sig aggregate."""
    workspace_id: str
    name: str
    default_quorum: QuorumPolicy
    threshold_rules: List[ThresholdRule] = field(default_factory=list)
    authorized_signers: List[AuthorizedSigner] = field(default_factory=list)
    operations: List[Operation] = field(default_factory=list)
    stats: WalletStats = field(default_factory=WalletStats)
    description: str = ""
    is_active: bool = True
    inherit_from_workspace: bool = True
    version: int = 0
    created_at: datetime = field(default_factory=utc_now)

    def validate_policy(self) -> None:
        """Raise PolicyError if the quorum policy cannot be satisfied."""
        self.default_quorum.validate()
        for rule in self.threshold_rules:
            if rule.required_m < 1:
                raise PolicyError(
                    f"Threshold rule at {rule.min_amount} requires m >= 1",
                    details={"min_amount": str(rule.min_amount)},
                )
            if rule.max_approval_hours <= 0:
                raise PolicyError(
                    f"Threshold rule at {rule.min_amount} has non-positive approval window",
                    details={"min_amount": str(rule.min_amount)},
                )
            if rule.max_amount is not None and rule.max_amount < rule.min_amount:
                raise PolicyError(
                    f"Threshold rule at {rule.min_amount} has max_amount below min_amount",
                    details={"min_amount": str(rule.min_amount)},
                )

    def require_active(self) -> None:
        if not self.is_active:
            raise PolicyError(
                "Multi-sig wallet is inactive",
                details={"workspace_id": self.workspace_id},
            )

    def get_signer(self, user_id: str) -> Optional[AuthorizedSigner]:
        for signer in self.authorized_signers:
            if signer.user_id == user_id:
                return signer
        return None

    def approvers(self) -> List[AuthorizedSigner]:
        return [s for s in self.authorized_signers if s.can_approve]

    def find_operation(self, operation_id: str) -> Optional[Operation]:
        for operation in self.operations:
            if operation.operation_id == operation_id:
                return operation
        return None

    def get_operation(self, operation_id: str) -> Operation:
        operation = self.find_operation(operation_id)
        if operation is None:
            raise NotFoundError("Operation", operation_id)
        return operation

    def pending_signers(self, operation: Operation) -> List[str]:
        """Approvers who have not signed ``operation`` yet."""
        return [
            s.user_id for s in self.approvers()
            if not operation.has_signed(s.user_id)
        ]

    def require_capability(self, user_id: str, capability: str) -> AuthorizedSigner:
        """Return the signer if it holds ``capability`` (can_initiate/can_approve/can_reject)."""
        signer = self.get_signer(user_id)
        if signer is None or not getattr(signer, capability):
            action = capability.removeprefix("can_")
            raise AuthorizationError(
                f"User not authorized to {action} operations",
                user_id=user_id,
                capability=capability,
            )
        return signer

    def can_user_sign(
        self,
        user_id: str,
        operation_id: str,
        now: datetime,
    ) -> tuple[AuthorizedSigner, Operation]:
        """Check every precondition of a signature, raising on the first failure."""
        self.require_active()
        signer = self.require_capability(user_id, "can_approve")
        operation = self.get_operation(operation_id)

        if operation.status != OperationStatus.PENDING:
            raise InvalidStateError(
                f"Operation is {operation.status.value}",
                operation_id=operation_id,
                current_status=operation.status.value,
            )
        if operation.is_expired(now):
            raise InvalidStateError(
                "Operation has expired",
                operation_id=operation_id,
                current_status=operation.status.value,
            )
        if operation.has_signed(user_id):
            raise InvalidStateError(
                "User has already signed",
                operation_id=operation_id,
                current_status=operation.status.value,
                details={"signer_id": user_id},
            )
        return signer, operation

    def expire_operation(self, operation_id: str, now: datetime) -> QuorumSnapshot:
        """PENDING -> EXPIRED for an overdue operation; returns the frozen quorum state."""
        operation = self.get_operation(operation_id)
        if operation.status == OperationStatus.PENDING and not operation.is_expired(now):
            raise InvalidStateError(
                "Operation has not reached its expiry",
                operation_id=operation_id,
                current_status=operation.status.value,
            )
        operation.transition(OperationStatus.EXPIRED)
        operation.resolved_at = now
        self.stats.expired_operations += 1
        return operation.quorum_snapshot()

    def pending_operations(self) -> List[Operation]:
        return [op for op in self.operations if op.status == OperationStatus.PENDING]


def default_wallet(workspace_id: str) -> Wallet:
    """Default treasury wallet auto-created for a workspace without one."""
    return Wallet(
        workspace_id=workspace_id,
        name="Default Treasury Wallet",
        description="Auto-created multi-sig wallet for treasury operations",
        default_quorum=QuorumPolicy(m=2, n=3),
        threshold_rules=[
            ThresholdRule(
                min_amount=Decimal("1000"),
                required_m=2,
                required_proof_types=[ProofType.PASSWORD],
                max_approval_hours=24,
            ),
            ThresholdRule(
                min_amount=Decimal("10000"),
                required_m=3,
                required_proof_types=[ProofType.PASSWORD, ProofType.TOTP],
                max_approval_hours=12,
            ),
            ThresholdRule(
                min_amount=Decimal("100000"),
                required_m=4,
                required_proof_types=[ProofType.PASSWORD, ProofType.HARDWARE_KEY],
                max_approval_hours=6,
            ),
        ],
    )


__all__ = [
    "OperationStatus",
    "VALID_TRANSITIONS",
    "OperationType",
    "ProofType",
    "STRONGEST_PROOF_TYPES",
    "SignerRole",
    "PRIVILEGED_ROLES",
    "QuorumMode",
    "QuorumPolicy",
    "ThresholdRule",
    "AuthorizedSigner",
    "Signature",
    "Rejection",
    "EscalationRecord",
    "QuorumSnapshot",
    "Operation",
    "OperationSummary",
    "WalletStats",
    "Wallet",
    "default_wallet",
    "utc_now",
]
