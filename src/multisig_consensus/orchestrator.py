"""
Multi-signature consensus orchestrator.

Gates high-value operations behind an M-of-N quorum of verified approvals:
- initiate: resolve the quorum and open a PENDING operation
- submit_signature: verify a proof, append it, approve on quorum
- reject: record a rejection; a privileged reject vetoes the operation
- execute: hand an APPROVED operation's payload to settlement
- escalate / expire: maintenance transitions used by the reconciler

Every mutation is an optimistic read-modify-write against the WalletStore.
Audit records and events are produced only after the write has succeeded,
so a retried attempt never leaves a trace behind.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, TypeVar

from .config import ConsensusSettings, load_settings
from .events import EventOutbox, EventType
from .exceptions import (
    AuthorizationError,
    ConcurrencyConflictError,
    DuplicateOperationError,
    InvalidStateError,
    NotFoundError,
    ProofVerificationError,
)
from .logging import mask_value
from .models import (
    EscalationRecord,
    Operation,
    OperationStatus,
    OperationSummary,
    OperationType,
    ProofType,
    QuorumSnapshot,
    Rejection,
    Signature,
    Wallet,
    default_wallet,
    utc_now,
)
from .proofs import ProofVerifier, VerificationRequest, aggregate_signatures
from .quorum import PolicyProvider, Quorum, QuorumResolver
from .repository import ApprovalRepository, InMemoryApprovalRepository
from .store import InMemoryWalletStore, WalletStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

OPERATION_ID_ATTEMPTS = 5


@dataclass
class InitiationResult:
    operation_id: str
    workspace_id: str
    status: OperationStatus
    required_signatures: int
    total_eligible_signers: int
    expires_at: datetime
    threshold_percent: float
    required_proof_types: List[ProofType] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "workspace_id": self.workspace_id,
            "status": self.status.value,
            "required_signatures": self.required_signatures,
            "total_eligible_signers": self.total_eligible_signers,
            "expires_at": self.expires_at.isoformat(),
            "threshold_percent": self.threshold_percent,
            "required_proof_types": [p.value for p in self.required_proof_types],
        }


@dataclass
class ExecutionResult:
    operation_id: str
    status: OperationStatus
    operation_type: OperationType
    payload: Dict[str, Any]
    executed_at: datetime


@dataclass
class EscalationResult:
    operation_id: str
    escalation_level: int
    pending_signer_count: int
    pending_signers: List[str]
    escalated: bool


@dataclass
class ExpirationResult:
    operation_id: str
    workspace_id: str
    quorum_state: QuorumSnapshot
    expired_at: datetime


@dataclass
class MultiSigRequirement:
    """Advisory answer for the interception layer."""
    required: bool
    threshold: Decimal
    quorum: Optional[Quorum] = None


def _payload_hash(payload: Any) -> str:
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, default=str).encode()
    ).hexdigest()


class MultiSigOrchestrator:
    """
    State machine for M-of-N approval of high-value operations.

    Args:
        wallet_store: Wallet persistence with optimistic versioning
        repository: Append-only approval trail
        verifier: Proof verifier (challenge-bound)
        outbox: Event outbox for notifications
        resolver: Quorum resolver
        policy_provider: Optional source of workspace quorum overrides
        settings: Consensus settings (defaults to load_settings())
        clock: Returns the current UTC datetime
    """

    def __init__(
        self,
        wallet_store: Optional[WalletStore] = None,
        repository: Optional[ApprovalRepository] = None,
        verifier: Optional[ProofVerifier] = None,
        outbox: Optional[EventOutbox] = None,
        resolver: Optional[QuorumResolver] = None,
        policy_provider: Optional[PolicyProvider] = None,
        settings: Optional[ConsensusSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or load_settings()
        self._clock = clock or utc_now
        self._store = wallet_store or InMemoryWalletStore()
        self._repository = repository or InMemoryApprovalRepository(clock=self._clock)
        self._verifier = verifier or ProofVerifier(
            settings=self.settings.proofs,
            clock=lambda: self._clock().timestamp(),
        )
        self._outbox = outbox or EventOutbox(clock=self._clock)
        self._resolver = resolver or QuorumResolver(
            self.settings.default_high_value_threshold,
            self.settings.default_approval_hours,
        )
        self._policy_provider = policy_provider

    @property
    def store(self) -> WalletStore:
        return self._store

    @property
    def repository(self) -> ApprovalRepository:
        return self._repository

    @property
    def verifier(self) -> ProofVerifier:
        return self._verifier

    @property
    def outbox(self) -> EventOutbox:
        return self._outbox

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Wallets
    # -------------------------------------------------------------------------

    async def get_or_create_wallet(self, workspace_id: str) -> Wallet:
        """Load the workspace wallet, creating the default treasury wallet if absent."""
        wallet = await self._store.load(workspace_id)
        if wallet is not None:
            return wallet

        wallet = default_wallet(workspace_id)
        try:
            saved = await self._store.save(wallet, expected_version=0)
        except ConcurrencyConflictError:
            # Created concurrently
            return await self._store.load(workspace_id)
        logger.info(f"Created default multi-sig wallet for workspace {workspace_id}")
        return saved

    async def register_wallet(self, wallet: Wallet) -> Wallet:
        """Create or replace a wallet's configuration.

        Raises:
            PolicyError: If the quorum policy is malformed
        """
        wallet.validate_policy()
        existing = await self._store.load(wallet.workspace_id)
        expected = existing.version if existing is not None else 0
        return await self._store.save(wallet, expected_version=expected)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def requires_multisig(
        self,
        workspace_id: str,
        amount: Decimal,
        operation_type: OperationType = OperationType.VIRTUAL_TRANSFER,
    ) -> MultiSigRequirement:
        """Whether ``amount`` crosses the workspace's lowest multi-sig threshold."""
        amount = Decimal(str(amount))
        wallet = await self._store.load(workspace_id)
        if wallet is None or not wallet.is_active:
            threshold = self._resolver.lowest_threshold(None)
            return MultiSigRequirement(required=amount >= threshold, threshold=threshold)

        threshold = self._resolver.lowest_threshold(wallet)
        return MultiSigRequirement(
            required=amount >= threshold,
            threshold=threshold,
            quorum=self._resolver.base_quorum(wallet, amount),
        )

    async def initiate(
        self,
        workspace_id: str,
        operation_type: OperationType,
        payload: Dict[str, Any],
        amount: Decimal,
        initiator_id: str,
        quorum_override: Optional[Mapping[str, Any]] = None,
    ) -> InitiationResult:
        """
        Open a PENDING operation requiring quorum approval.

        Args:
            workspace_id: Workspace whose wallet gates the operation
            operation_type: Kind of operation
            payload: Opaque payload handed to settlement on execute
            amount: Amount in base currency
            initiator_id: User initiating
            quorum_override: Optional partial quorum merged onto the resolved one

        Raises:
            AuthorizationError: If the initiator may not initiate
            PolicyError: If the wallet is inactive or the resolved quorum is unsatisfiable
        """
        operation_type = OperationType(operation_type)
        amount = Decimal(str(amount))
        wallet = await self.get_or_create_wallet(workspace_id)
        wallet.require_active()
        wallet.require_capability(initiator_id, "can_initiate")

        policy_override = None
        if self._policy_provider is not None and wallet.inherit_from_workspace:
            policy_override = await self._policy_provider.get_quorum_override(workspace_id)

        operation_id = await self._reserve_operation_id(workspace_id, operation_type)

        def mutate(w: Wallet) -> Tuple[Operation, bool]:
            w.require_active()
            w.require_capability(initiator_id, "can_initiate")
            quorum = self._resolver.resolve(w, amount, operation_type, policy_override)
            if quorum_override:
                quorum = self._resolver.apply_override(quorum, quorum_override, operation_type)
            now = self.now()
            operation = Operation(
                operation_id=operation_id,
                workspace_id=workspace_id,
                operation_type=operation_type,
                payload=dict(payload),
                amount=amount,
                initiated_by=initiator_id,
                initiated_at=now,
                required_signatures=quorum.m,
                total_eligible_signers=quorum.n,
                threshold_percent=quorum.threshold_percent,
                required_proof_types=list(quorum.required_proof_types),
                expires_at=now + timedelta(hours=quorum.max_approval_hours),
            )
            w.operations.append(operation)
            w.stats.total_operations += 1
            return operation, True

        wallet, operation = await self._mutate(
            lambda: self._store.load(workspace_id), mutate, "initiate", workspace_id
        )

        await self._repository.record_initiation(operation)
        await self._outbox.emit(EventType.OPERATION_INITIATED, {
            "operation_id": operation_id,
            "workspace_id": workspace_id,
            "operation_type": operation_type.value,
            "amount": str(amount),
            "initiated_by": initiator_id,
            "required_signatures": operation.required_signatures,
            "eligible_signers": [s.user_id for s in wallet.approvers()],
            "expires_at": operation.expires_at.isoformat(),
        })

        logger.info(
            f"Operation {operation_id} initiated: {operation_type.value} for {amount} "
            f"({operation.required_signatures}-of-{operation.total_eligible_signers})"
        )

        return InitiationResult(
            operation_id=operation_id,
            workspace_id=workspace_id,
            status=operation.status,
            required_signatures=operation.required_signatures,
            total_eligible_signers=operation.total_eligible_signers,
            expires_at=operation.expires_at,
            threshold_percent=operation.threshold_percent,
            required_proof_types=list(operation.required_proof_types),
        )

    async def submit_signature(
        self,
        operation_id: str,
        signer_id: str,
        proof_type: ProofType | str,
        proof_data: Mapping[str, Any],
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> OperationSummary:
        """
        Verify and append a signature; approve the operation on quorum.

        Raises:
            NotFoundError: Unknown operation
            AuthorizationError: Signer may not approve
            InvalidStateError: Operation not PENDING, expired, or already signed by signer
            PolicyError: The wallet has been deactivated
            ProofVerificationError: Proof rejected (operation stays PENDING)
        """
        wallet = await self._load_for_operation(operation_id)
        signer, operation = wallet.can_user_sign(signer_id, operation_id, self.now())

        proof_type_value = str(getattr(proof_type, "value", proof_type)).lower()

        async def fail(reason: str) -> ProofVerificationError:
            await self._repository.record_failed_signature(
                operation_id,
                signer_id,
                proof_type_value,
                reason,
                device_fingerprint=device_fingerprint,
                ip_address=ip_address,
            )
            logger.warning(f"Signature rejected for {operation_id} by {signer_id}: {reason}")
            return ProofVerificationError(reason, operation_id=operation_id, proof_type=proof_type_value)

        try:
            resolved_type = ProofType(proof_type_value)
        except ValueError:
            raise await fail(f"Unsupported proof type: {proof_type_value}")
        if operation.required_proof_types and resolved_type not in operation.required_proof_types:
            raise await fail(f"Proof type {resolved_type.value} not accepted for this operation")
        if signer.required_proof_types and resolved_type not in signer.required_proof_types:
            raise await fail(f"Proof type {resolved_type.value} not permitted for this signer")

        verification = await self._verifier.verify(VerificationRequest(
            user_id=signer_id,
            proof_type=resolved_type,
            proof_data=proof_data,
            operation_id=operation_id,
            payload=operation.payload,
        ))
        if not verification.valid:
            raise await fail(verification.reason or "Invalid proof")

        signed_at = self.now()
        signature = Signature(
            signer_id=signer_id,
            signed_at=signed_at,
            signature_hash=self._signature_hash(
                operation_id, signer_id, verification.proof_hash, operation.payload, signed_at
            ),
            proof_type=resolved_type,
            verified=True,
            verified_at=verification.verified_at or signed_at,
            verification_method=verification.method,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        def mutate(w: Wallet) -> Tuple[Tuple[Operation, bool], bool]:
            now = self.now()
            _, op = w.can_user_sign(signer_id, operation_id, now)
            op.signatures.append(signature)
            quorum_reached = op.is_quorum_reached()
            if quorum_reached:
                op.transition(OperationStatus.APPROVED)
                op.resolved_at = now
                w.stats.record_approval((now - op.initiated_at).total_seconds() * 1000)
            return (op, quorum_reached), True

        wallet, (operation, quorum_reached) = await self._mutate(
            lambda: self._store.find_by_operation(operation_id), mutate, "submit_signature", operation_id
        )

        await self._repository.record_signature(operation, signature, quorum_reached)
        await self._outbox.emit(EventType.SIGNATURE_SUBMITTED, {
            "operation_id": operation_id,
            "signer_id": signer_id,
            "proof_type": resolved_type.value,
            "quorum_reached": quorum_reached,
            "signatures_collected": operation.collected_signatures,
            "signatures_required": operation.required_signatures,
        })
        if quorum_reached:
            aggregate = aggregate_signatures(operation.verified_signatures())
            await self._outbox.emit(EventType.QUORUM_REACHED, {
                "operation_id": operation_id,
                "workspace_id": operation.workspace_id,
                "operation_type": operation.operation_type.value,
                "amount": str(operation.amount),
                "payload": operation.payload,
                "signers": [s.signer_id for s in operation.verified_signatures()],
                "aggregated_hash": aggregate.aggregated_hash if aggregate else None,
            })

        logger.debug(f"Signature {mask_value(signature.signature_hash)} appended to {operation_id}")
        logger.info(
            f"Signature submitted for {operation_id} by {signer_id}. "
            f"Quorum: {quorum_reached} ({operation.collected_signatures}/{operation.required_signatures})"
        )
        return operation.summary(self.now())

    async def reject(self, operation_id: str, user_id: str, reason: str = "") -> OperationSummary:
        """
        Record a rejection. An OWNER or ADMIN rejection is a veto and resolves
        the operation as REJECTED; other rejections are recorded only.

        Raises:
            NotFoundError, AuthorizationError, InvalidStateError
        """

        def mutate(w: Wallet) -> Tuple[Tuple[Operation, bool], bool]:
            signer = w.require_capability(user_id, "can_reject")
            op = w.get_operation(operation_id)
            if op.status != OperationStatus.PENDING:
                raise InvalidStateError(
                    "Operation is not pending",
                    operation_id=operation_id,
                    current_status=op.status.value,
                )
            now = self.now()
            op.rejections.append(Rejection(
                user_id=user_id, rejected_at=now, reason=reason, role=signer.role
            ))
            is_final = signer.is_privileged
            if is_final:
                op.transition(OperationStatus.REJECTED)
                op.resolved_at = now
                op.resolved_by = user_id
                w.stats.rejected_operations += 1
            return (op, is_final), True

        await self._load_for_operation(operation_id)
        wallet, (operation, is_final) = await self._mutate(
            lambda: self._store.find_by_operation(operation_id), mutate, "reject", operation_id
        )

        await self._repository.record_rejection(operation_id, user_id, reason, is_final)
        await self._outbox.emit(EventType.OPERATION_REJECTED, {
            "operation_id": operation_id,
            "user_id": user_id,
            "reason": reason,
            "is_final": is_final,
        })

        logger.info(f"Operation {operation_id} rejected by {user_id} (final={is_final})")
        return operation.summary(self.now())

    async def execute(self, operation_id: str, executor_id: str) -> ExecutionResult:
        """
        Mark an APPROVED operation EXECUTED and release its payload.

        Raises:
            NotFoundError, AuthorizationError, InvalidStateError
        """

        def mutate(w: Wallet) -> Tuple[Operation, bool]:
            if w.get_signer(executor_id) is None:
                raise AuthorizationError(
                    "User not authorized to execute operations",
                    user_id=executor_id,
                )
            op = w.get_operation(operation_id)
            if op.status != OperationStatus.APPROVED:
                raise InvalidStateError(
                    "Operation is not approved",
                    operation_id=operation_id,
                    current_status=op.status.value,
                )
            op.transition(OperationStatus.EXECUTED)
            op.executed_at = self.now()
            return op, True

        await self._load_for_operation(operation_id)
        _, operation = await self._mutate(
            lambda: self._store.find_by_operation(operation_id), mutate, "execute", operation_id
        )

        await self._repository.record_execution(operation_id, executor_id, operation.executed_at)
        await self._outbox.emit(EventType.OPERATION_EXECUTED, {
            "operation_id": operation_id,
            "operation_type": operation.operation_type.value,
            "payload": operation.payload,
            "amount": str(operation.amount),
            "executor_id": executor_id,
        })

        logger.info(f"Operation {operation_id} executed by {executor_id}")
        return ExecutionResult(
            operation_id=operation_id,
            status=operation.status,
            operation_type=operation.operation_type,
            payload=operation.payload,
            executed_at=operation.executed_at,
        )

    async def escalate(self, operation_id: str, reason: str) -> Optional[EscalationResult]:
        """
        Raise the escalation level of a stalled PENDING operation.

        Returns:
            EscalationResult (``escalated=False`` at the level cap, nothing
            changed), or None if the operation is already resolved.
        """
        max_levels = self.settings.max_escalation_levels

        def mutate(w: Wallet) -> Tuple[Optional[EscalationResult], bool]:
            op = w.get_operation(operation_id)
            if op.status != OperationStatus.PENDING:
                return None, False

            pending_signers = w.pending_signers(op)
            if op.escalation_level >= max_levels:
                return EscalationResult(
                    operation_id=operation_id,
                    escalation_level=op.escalation_level,
                    pending_signer_count=len(pending_signers),
                    pending_signers=pending_signers,
                    escalated=False,
                ), False

            now = self.now()
            op.escalation_level += 1
            op.last_escalated_at = now
            op.escalation_history.append(EscalationRecord(
                level=op.escalation_level,
                escalated_at=now,
                reason=reason,
                notified_users=list(pending_signers),
            ))
            return EscalationResult(
                operation_id=operation_id,
                escalation_level=op.escalation_level,
                pending_signer_count=len(pending_signers),
                pending_signers=pending_signers,
                escalated=True,
            ), True

        await self._load_for_operation(operation_id)
        _, result = await self._mutate(
            lambda: self._store.find_by_operation(operation_id), mutate, "escalate", operation_id
        )
        if result is None or not result.escalated:
            return result

        await self._repository.record_escalation(
            operation_id, result.escalation_level, reason, result.pending_signers
        )
        await self._outbox.emit(EventType.OPERATION_ESCALATED, {
            "operation_id": operation_id,
            "escalation_level": result.escalation_level,
            "reason": reason,
            "pending_signers": result.pending_signers,
        })

        logger.info(f"Operation {operation_id} escalated to level {result.escalation_level}")
        return result

    async def expire(self, operation_id: str) -> Optional[ExpirationResult]:
        """
        PENDING -> EXPIRED for an operation past its expiry.

        Returns:
            ExpirationResult, or None if the operation was resolved meanwhile.

        Raises:
            InvalidStateError: If the operation has not reached its expiry
        """

        def mutate(w: Wallet) -> Tuple[Optional[ExpirationResult], bool]:
            op = w.get_operation(operation_id)
            if op.status != OperationStatus.PENDING:
                return None, False
            now = self.now()
            snapshot = w.expire_operation(operation_id, now)
            return ExpirationResult(
                operation_id=operation_id,
                workspace_id=w.workspace_id,
                quorum_state=snapshot,
                expired_at=now,
            ), True

        await self._load_for_operation(operation_id)
        _, result = await self._mutate(
            lambda: self._store.find_by_operation(operation_id), mutate, "expire", operation_id
        )
        if result is None:
            return None

        await self._repository.record_expiration(operation_id, result.quorum_state, result.expired_at)
        await self._outbox.emit(EventType.OPERATION_EXPIRED, {
            "operation_id": operation_id,
            "workspace_id": result.workspace_id,
            "quorum_state": result.quorum_state.to_dict(),
        })

        logger.info(f"Operation {operation_id} expired")
        return result

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_operation_summary(self, operation_id: str) -> OperationSummary:
        wallet = await self._load_for_operation(operation_id)
        return wallet.get_operation(operation_id).summary(self.now())

    async def get_pending_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        """PENDING, unexpired operations the user can approve and has not signed."""
        now = self.now()
        pending = []
        for wallet in await self._store.list_wallets():
            if not wallet.is_active:
                continue
            signer = wallet.get_signer(user_id)
            if signer is None or not signer.can_approve:
                continue
            for op in wallet.pending_operations():
                if op.has_signed(user_id) or op.is_expired(now):
                    continue
                entry = op.summary(now).to_dict()
                entry["wallet_name"] = wallet.name
                pending.append(entry)
        return pending

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _load_for_operation(self, operation_id: str) -> Wallet:
        wallet = await self._store.find_by_operation(operation_id)
        if wallet is None or wallet.find_operation(operation_id) is None:
            raise NotFoundError("Operation", operation_id)
        return wallet

    async def _mutate(
        self,
        load: Callable[[], Awaitable[Optional[Wallet]]],
        mutate: Callable[[Wallet], Tuple[T, bool]],
        action: str,
        resource_id: str,
    ) -> Tuple[Wallet, T]:
        """Optimistic read-modify-write.

        ``mutate`` returns (result, dirty); a clean result is returned without
        a write. Domain errors raised by ``mutate`` propagate before any save.
        """
        retries = self.settings.concurrency_retries
        attempt = 0
        while True:
            attempt += 1
            wallet = await load()
            if wallet is None:
                raise NotFoundError("Wallet", resource_id)
            expected_version = wallet.version
            result, dirty = mutate(wallet)
            if not dirty:
                return wallet, result
            try:
                saved = await self._store.save(wallet, expected_version)
                return saved, result
            except ConcurrencyConflictError:
                if attempt >= retries:
                    logger.warning(
                        f"Giving up {action} on {resource_id} after {retries} concurrent modifications"
                    )
                    raise
                logger.debug(
                    f"Version conflict during {action} on {resource_id} (attempt {attempt}/{retries})"
                )
                await asyncio.sleep(0)

    async def _reserve_operation_id(self, workspace_id: str, operation_type: OperationType) -> str:
        for _ in range(OPERATION_ID_ATTEMPTS):
            operation_id = (
                f"mso_{workspace_id[-6:]}_{operation_type.value[:4]}_{uuid.uuid4().hex}"
            )
            if await self._store.reserve_operation_id(operation_id, workspace_id):
                return operation_id
            logger.warning(f"Operation id collision on {operation_id}, regenerating")
        raise DuplicateOperationError(operation_id)

    @staticmethod
    def _signature_hash(
        operation_id: str,
        signer_id: str,
        proof_hash: Optional[str],
        payload: Any,
        signed_at: datetime,
    ) -> str:
        data = json.dumps({
            "operation_id": operation_id,
            "signer_id": signer_id,
            "proof_hash": proof_hash,
            "payload_hash": _payload_hash(payload),
            "timestamp": signed_at.isoformat(),
        }, sort_keys=True)
        return hashlib.sha256(data.encode()).hexdigest()


__all__ = [
    "InitiationResult",
    "ExecutionResult",
    "EscalationResult",
    "ExpirationResult",
    "MultiSigRequirement",
    "MultiSigOrchestrator",
]
