"""
Append-only approval trail.

Every state transition of an operation produces exactly one ApprovalTrace.
Traces are hash-chained per operation: the first trace links to
``GENESIS`` and each subsequent trace to its predecessor's hash, so any
edit, insertion or deletion is detected by verify_chain_integrity().
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .models import Operation, QuorumSnapshot, Signature, utc_now

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"
MATCH_WINDOW_HOURS = 24


class TraceEventType(str, Enum):
    INITIATED = "INITIATED"
    SIGNATURE = "SIGNATURE"
    APPROVED = "APPROVED"
    SIGNATURE_FAILED = "SIGNATURE_FAILED"
    REJECTED = "REJECTED"
    EXECUTED = "EXECUTED"
    ESCALATED = "ESCALATED"
    EXPIRED = "EXPIRED"


@dataclass
class ApprovalTrace:
    """A single audit record in an operation's chain."""
    trace_id: str
    operation_id: str
    event_type: TraceEventType
    timestamp: datetime
    workspace_id: Optional[str] = None
    actor_id: Optional[str] = None
    operation_type: Optional[str] = None
    amount: Optional[Decimal] = None
    signature_hash: Optional[str] = None
    proof_type: Optional[str] = None
    proof_valid: Optional[bool] = None
    quorum_state: Optional[Dict[str, Any]] = None
    device_fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    prev_trace_hash: str = GENESIS_HASH
    current_trace_hash: str = ""

    def compute_hash(self) -> str:
        data = {
            "prev_hash": self.prev_trace_hash,
            "operation_id": self.operation_id,
            "event_type": self.event_type.value,
            "actor_id": self.actor_id,
            "signature_hash": self.signature_hash,
            "timestamp": self.timestamp.isoformat(),
        }
        content = json.dumps(data, sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "operation_id": self.operation_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "workspace_id": self.workspace_id,
            "actor_id": self.actor_id,
            "operation_type": self.operation_type,
            "amount": str(self.amount) if self.amount is not None else None,
            "signature_hash": self.signature_hash,
            "proof_type": self.proof_type,
            "proof_valid": self.proof_valid,
            "quorum_state": self.quorum_state,
            "metadata": self.metadata,
            "prev_trace_hash": self.prev_trace_hash,
            "current_trace_hash": self.current_trace_hash,
        }


@dataclass
class IntegrityResult:
    valid: bool
    reason: Optional[str] = None
    trace_id: Optional[str] = None
    traces_verified: int = 0


@dataclass
class StalledOperation:
    operation_id: str
    workspace_id: Optional[str]
    operation_type: Optional[str]
    amount: Optional[Decimal]
    initiated_at: datetime
    stalled_hours: int


class ApprovalRepository(Protocol):
    """Durable audit trail consumed by the orchestrator and the reconciler."""

    async def record_initiation(self, operation: Operation) -> ApprovalTrace: ...

    async def record_signature(
        self, operation: Operation, signature: Signature, quorum_reached: bool
    ) -> ApprovalTrace: ...

    async def record_failed_signature(
        self,
        operation_id: str,
        signer_id: str,
        proof_type: str,
        reason: str,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ApprovalTrace: ...

    async def record_rejection(
        self, operation_id: str, user_id: str, reason: str, is_final: bool
    ) -> ApprovalTrace: ...

    async def record_execution(
        self, operation_id: str, executor_id: str, executed_at: datetime
    ) -> ApprovalTrace: ...

    async def record_escalation(
        self,
        operation_id: str,
        escalation_level: int,
        reason: str,
        notified_users: List[str],
    ) -> ApprovalTrace: ...

    async def record_expiration(
        self, operation_id: str, quorum_state: QuorumSnapshot, expired_at: datetime
    ) -> ApprovalTrace: ...

    async def create_trace(
        self, operation_id: str, event_type: TraceEventType, **fields: Any
    ) -> ApprovalTrace: ...

    async def get_operation_status(self, operation_id: str) -> Optional[Dict[str, Any]]: ...

    async def find_matching_operation(self, criteria: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def get_operation_history(self, operation_id: str) -> List[ApprovalTrace]: ...

    async def verify_chain_integrity(self, operation_id: str) -> IntegrityResult: ...

    async def get_stalled_operations(self, min_hours: float) -> List[StalledOperation]: ...

    async def get_recent_operation_ids(self, hours: float) -> List[str]: ...

    async def get_workspace_stats(
        self,
        workspace_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, Any]]: ...


class InMemoryApprovalRepository:
    """ApprovalRepository kept in process memory.

    Args:
        clock: Returns the current UTC datetime; trace timestamps come from it.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now
        self._traces: Dict[str, List[ApprovalTrace]] = {}
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def record_initiation(self, operation: Operation) -> ApprovalTrace:
        return await self.create_trace(
            operation.operation_id,
            TraceEventType.INITIATED,
            workspace_id=operation.workspace_id,
            actor_id=operation.initiated_by,
            operation_type=operation.operation_type.value,
            amount=operation.amount,
            quorum_state=QuorumSnapshot(
                required=operation.required_signatures,
                collected=0,
                remaining=operation.required_signatures,
                eligible=operation.total_eligible_signers,
            ).to_dict(),
            metadata={
                "expires_at": operation.expires_at.isoformat(),
                "required_proof_types": [p.value for p in operation.required_proof_types],
            },
        )

    async def record_signature(
        self, operation: Operation, signature: Signature, quorum_reached: bool
    ) -> ApprovalTrace:
        snapshot = operation.quorum_snapshot()
        snapshot.eligible = None
        return await self.create_trace(
            operation.operation_id,
            TraceEventType.APPROVED if quorum_reached else TraceEventType.SIGNATURE,
            workspace_id=operation.workspace_id,
            actor_id=signature.signer_id,
            signature_hash=signature.signature_hash,
            proof_type=signature.proof_type.value,
            proof_valid=signature.verified,
            quorum_state=snapshot.to_dict(),
            device_fingerprint=signature.device_fingerprint,
            ip_address=signature.ip_address,
            metadata={
                "quorum_reached": quorum_reached,
                "verification_method": signature.verification_method,
            },
        )

    async def record_failed_signature(
        self,
        operation_id: str,
        signer_id: str,
        proof_type: str,
        reason: str,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ApprovalTrace:
        return await self.create_trace(
            operation_id,
            TraceEventType.SIGNATURE_FAILED,
            actor_id=signer_id,
            proof_type=proof_type,
            proof_valid=False,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            metadata={"failure_reason": reason},
        )

    async def record_rejection(
        self, operation_id: str, user_id: str, reason: str, is_final: bool
    ) -> ApprovalTrace:
        return await self.create_trace(
            operation_id,
            TraceEventType.REJECTED,
            actor_id=user_id,
            metadata={"reason": reason, "is_final": is_final},
        )

    async def record_execution(
        self, operation_id: str, executor_id: str, executed_at: datetime
    ) -> ApprovalTrace:
        return await self.create_trace(
            operation_id,
            TraceEventType.EXECUTED,
            actor_id=executor_id,
            metadata={"executed_at": executed_at.isoformat()},
        )

    async def record_escalation(
        self,
        operation_id: str,
        escalation_level: int,
        reason: str,
        notified_users: List[str],
    ) -> ApprovalTrace:
        return await self.create_trace(
            operation_id,
            TraceEventType.ESCALATED,
            metadata={
                "escalation_level": escalation_level,
                "reason": reason,
                "notified_users": list(notified_users),
            },
        )

    async def record_expiration(
        self, operation_id: str, quorum_state: QuorumSnapshot, expired_at: datetime
    ) -> ApprovalTrace:
        return await self.create_trace(
            operation_id,
            TraceEventType.EXPIRED,
            quorum_state=quorum_state.to_dict(),
            metadata={"expired_at": expired_at.isoformat()},
        )

    async def create_trace(
        self, operation_id: str, event_type: TraceEventType, **fields: Any
    ) -> ApprovalTrace:
        """Append a trace linked to the operation's previous one."""
        async with self._lock:
            chain = self._traces.setdefault(operation_id, [])
            prev_hash = chain[-1].current_trace_hash if chain else GENESIS_HASH
            trace = ApprovalTrace(
                trace_id=self._generate_trace_id(operation_id, event_type),
                operation_id=operation_id,
                event_type=event_type,
                timestamp=fields.pop("timestamp", None) or self._clock(),
                prev_trace_hash=prev_hash,
                **fields,
            )
            trace.current_trace_hash = trace.compute_hash()
            chain.append(trace)
            logger.debug("Recorded %s for %s (%s)", event_type.value, operation_id, trace.trace_id)
            return copy.deepcopy(trace)

    @staticmethod
    def _generate_trace_id(operation_id: str, event_type: TraceEventType) -> str:
        return f"AT-{operation_id[-8:]}-{event_type.value[:3]}-{uuid.uuid4().hex[:12]}"

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_operation_history(self, operation_id: str) -> List[ApprovalTrace]:
        return copy.deepcopy(self._traces.get(operation_id, []))

    async def get_operation_status(self, operation_id: str) -> Optional[Dict[str, Any]]:
        """Reconstruct an operation's status from its traces alone."""
        traces = self._traces.get(operation_id)
        if not traces:
            return None

        initiated = next((t for t in traces if t.event_type == TraceEventType.INITIATED), None)
        signatures = [
            t for t in traces
            if t.event_type in (TraceEventType.SIGNATURE, TraceEventType.APPROVED)
        ]
        kinds = {t.event_type for t in traces}
        final_rejection = any(
            t.event_type == TraceEventType.REJECTED and t.metadata.get("is_final")
            for t in traces
        )

        if TraceEventType.EXECUTED in kinds:
            status = "executed"
        elif TraceEventType.APPROVED in kinds:
            status = "approved"
        elif final_rejection:
            status = "rejected"
        elif TraceEventType.EXPIRED in kinds:
            status = "expired"
        else:
            status = "pending"

        required = (initiated.quorum_state or {}).get("required", 0) if initiated else 0
        latest = traces[-1]
        resolved = latest.event_type in (
            TraceEventType.EXECUTED, TraceEventType.APPROVED, TraceEventType.EXPIRED
        ) or (latest.event_type == TraceEventType.REJECTED and latest.metadata.get("is_final"))

        return {
            "operation_id": operation_id,
            "status": status,
            "workspace_id": initiated.workspace_id if initiated else None,
            "operation_type": initiated.operation_type if initiated else None,
            "amount": initiated.amount if initiated else None,
            "initiated_at": initiated.timestamp if initiated else None,
            "required_signatures": required,
            "collected_signatures": len(signatures),
            "remaining_needed": max(0, required - len(signatures)),
            "expires_at": initiated.metadata.get("expires_at") if initiated else None,
            "signatures": [
                {
                    "signer_id": t.actor_id,
                    "signature_hash": t.signature_hash,
                    "proof_type": t.proof_type,
                    "signed_at": t.timestamp,
                }
                for t in signatures
            ],
            "resolved_at": latest.timestamp if resolved else None,
        }

    async def find_matching_operation(self, criteria: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Most recent operation initiated in the last 24h matching the criteria.

        Criteria keys: workspace_id, operation_type, amount, initiator_id.
        Keys that are absent are not matched on.
        """
        since = self._clock() - timedelta(hours=MATCH_WINDOW_HOURS)
        candidates = []
        for chain in self._traces.values():
            initiated = chain[0] if chain and chain[0].event_type == TraceEventType.INITIATED else None
            if initiated is None or initiated.timestamp < since:
                continue
            if "workspace_id" in criteria and initiated.workspace_id != criteria["workspace_id"]:
                continue
            if "operation_type" in criteria:
                wanted = getattr(criteria["operation_type"], "value", criteria["operation_type"])
                if initiated.operation_type != wanted:
                    continue
            if "amount" in criteria and initiated.amount != Decimal(str(criteria["amount"])):
                continue
            if "initiator_id" in criteria and initiated.actor_id != criteria["initiator_id"]:
                continue
            candidates.append(initiated)

        if not candidates:
            return None
        latest = max(candidates, key=lambda t: t.timestamp)
        return await self.get_operation_status(latest.operation_id)

    async def verify_chain_integrity(self, operation_id: str) -> IntegrityResult:
        traces = self._traces.get(operation_id, [])
        if not traces:
            return IntegrityResult(valid=True, reason="No traces found")

        expected_prev = GENESIS_HASH
        for trace in traces:
            if trace.prev_trace_hash != expected_prev:
                return IntegrityResult(
                    valid=False,
                    reason=f"Chain broken at trace {trace.trace_id}",
                    trace_id=trace.trace_id,
                )
            if trace.compute_hash() != trace.current_trace_hash:
                return IntegrityResult(
                    valid=False,
                    reason=f"Hash mismatch at trace {trace.trace_id}",
                    trace_id=trace.trace_id,
                )
            expected_prev = trace.current_trace_hash

        return IntegrityResult(valid=True, traces_verified=len(traces))

    async def get_stalled_operations(self, min_hours: float) -> List[StalledOperation]:
        """Operations initiated more than ``min_hours`` ago that are still pending."""
        now = self._clock()
        threshold = now - timedelta(hours=min_hours)
        stalled = []
        for operation_id, chain in self._traces.items():
            initiated = chain[0] if chain[0].event_type == TraceEventType.INITIATED else None
            if initiated is None or initiated.timestamp >= threshold:
                continue
            status = await self.get_operation_status(operation_id)
            if status and status["status"] == "pending":
                stalled.append(StalledOperation(
                    operation_id=operation_id,
                    workspace_id=initiated.workspace_id,
                    operation_type=initiated.operation_type,
                    amount=initiated.amount,
                    initiated_at=initiated.timestamp,
                    stalled_hours=round((now - initiated.timestamp).total_seconds() / 3600),
                ))
        stalled.sort(key=lambda s: s.initiated_at)
        return stalled

    async def get_recent_operation_ids(self, hours: float) -> List[str]:
        """Distinct operation ids with any trace in the last ``hours``."""
        since = self._clock() - timedelta(hours=hours)
        return [
            operation_id for operation_id, chain in self._traces.items()
            if any(t.timestamp >= since for t in chain)
        ]

    async def get_workspace_stats(
        self,
        workspace_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Dict[str, Any]]:
        """Trace counts and initiated amounts per event type for a workspace."""
        stats: Dict[str, Dict[str, Any]] = {}
        for chain in self._traces.values():
            if not chain or chain[0].workspace_id != workspace_id:
                continue
            for trace in chain:
                if start is not None and trace.timestamp < start:
                    continue
                if end is not None and trace.timestamp > end:
                    continue
                bucket = stats.setdefault(
                    trace.event_type.value.lower(),
                    {"count": 0, "total_amount": Decimal("0")},
                )
                bucket["count"] += 1
                if trace.amount is not None:
                    bucket["total_amount"] += trace.amount
        return stats


__all__ = [
    "GENESIS_HASH",
    "TraceEventType",
    "ApprovalTrace",
    "IntegrityResult",
    "StalledOperation",
    "ApprovalRepository",
    "InMemoryApprovalRepository",
]
