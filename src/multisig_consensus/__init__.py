"""Multi-signature consensus: M-of-N approval of high-value operations."""

from .config import ConsensusSettings, ProofSettings, ReconcilerSettings, load_settings
from .exceptions import (
    ConsensusException,
    AuthorizationError,
    InvalidStateError,
    ProofVerificationError,
    NotFoundError,
    PolicyError,
    ConcurrencyConflictError,
    DuplicateOperationError,
)
from .models import (
    OperationStatus,
    OperationType,
    ProofType,
    SignerRole,
    QuorumMode,
    QuorumPolicy,
    ThresholdRule,
    AuthorizedSigner,
    Signature,
    Rejection,
    EscalationRecord,
    QuorumSnapshot,
    Operation,
    OperationSummary,
    WalletStats,
    Wallet,
    default_wallet,
)
from .quorum import Quorum, QuorumResolver, PolicyProvider
from .challenges import Challenge, ChallengeStore
from .merkle import MerkleTree
from .proofs import (
    VerificationRequest,
    VerificationResult,
    CertificateCheck,
    CertificateValidator,
    CredentialStore,
    InMemoryCredentialStore,
    ProofVerifier,
    SignatureAggregate,
    aggregate_signatures,
)
from .events import EventType, ConsensusEvent, EventOutbox
from .store import WalletStore, InMemoryWalletStore
from .repository import (
    ApprovalRepository,
    ApprovalTrace,
    InMemoryApprovalRepository,
    IntegrityResult,
    StalledOperation,
    TraceEventType,
)
from .orchestrator import (
    MultiSigOrchestrator,
    InitiationResult,
    ExecutionResult,
    EscalationResult,
    ExpirationResult,
    MultiSigRequirement,
)
from .reconciler import ConsensusReconciler, ReconciliationStats
from .scheduler import ConsensusScheduler

__version__ = "0.1.0"

__all__ = [
    "ConsensusSettings",
    "ProofSettings",
    "ReconcilerSettings",
    "load_settings",
    "ConsensusException",
    "AuthorizationError",
    "InvalidStateError",
    "ProofVerificationError",
    "NotFoundError",
    "PolicyError",
    "ConcurrencyConflictError",
    "DuplicateOperationError",
    "OperationStatus",
    "OperationType",
    "ProofType",
    "SignerRole",
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
    "Quorum",
    "QuorumResolver",
    "PolicyProvider",
    "Challenge",
    "ChallengeStore",
    "MerkleTree",
    "VerificationRequest",
    "VerificationResult",
    "CertificateCheck",
    "CertificateValidator",
    "CredentialStore",
    "InMemoryCredentialStore",
    "ProofVerifier",
    "SignatureAggregate",
    "aggregate_signatures",
    "EventType",
    "ConsensusEvent",
    "EventOutbox",
    "WalletStore",
    "InMemoryWalletStore",
    "ApprovalRepository",
    "ApprovalTrace",
    "InMemoryApprovalRepository",
    "IntegrityResult",
    "StalledOperation",
    "TraceEventType",
    "MultiSigOrchestrator",
    "InitiationResult",
    "ExecutionResult",
    "EscalationResult",
    "ExpirationResult",
    "MultiSigRequirement",
    "ConsensusReconciler",
    "ReconciliationStats",
    "ConsensusScheduler",
]
