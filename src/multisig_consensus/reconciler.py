"""
Consensus reconciler.

Periodic maintenance of pending operations so they never get stuck:
1. escalate operations that have stalled without enough signatures
2. expire operations past their approval window
3. warn about operations close to expiry
4. spot-check the audit trail of recent operations for tampering

Runs on an interval (and once at startup) through ConsensusScheduler.
At most one run is in flight; overlapping triggers are skipped. Each
item is handled independently: a failure is logged with the operation
id, counted, and the batch continues. Passes run in a fixed order but
are not atomic with respect to signatures arriving mid-run.
"""
from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from .config import ReconcilerSettings
from .events import EventType
from .models import Operation, OperationStatus

if TYPE_CHECKING:
    from .orchestrator import MultiSigOrchestrator
    from .scheduler import ConsensusScheduler

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationStats:
    checked_operations: int = 0
    escalated_operations: int = 0
    expired_operations: int = 0
    expiring_warnings: int = 0
    integrity_violations: int = 0
    errors: int = 0
    duration_ms: float = 0.0
    completed_at: Optional[datetime] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked_operations": self.checked_operations,
            "escalated_operations": self.escalated_operations,
            "expired_operations": self.expired_operations,
            "expiring_warnings": self.expiring_warnings,
            "integrity_violations": self.integrity_violations,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
        }


def hours_since_last_action(operation: Operation, now: datetime) -> float:
    return (now - operation.last_action_at()).total_seconds() / 3600


class ConsensusReconciler:
    """
    Scheduled reconciliation of pending multi-sig operations.

    Args:
        orchestrator: Orchestrator whose store, repository and outbox are reconciled
        settings: Reconciler configuration (defaults to the orchestrator's)
        rng: Random source for integrity sampling
    """

    JOB_ID = "consensus_reconciler"

    def __init__(
        self,
        orchestrator: "MultiSigOrchestrator",
        settings: Optional[ReconcilerSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        self._orchestrator = orchestrator
        self._store = orchestrator.store
        self._repository = orchestrator.repository
        self._outbox = orchestrator.outbox
        self.config = settings or orchestrator.settings.reconciler
        self._rng = rng or random.Random()

        self._is_running = False
        self.last_run_at: Optional[datetime] = None
        self.last_stats: Optional[ReconciliationStats] = None
        self._scheduler: Optional["ConsensusScheduler"] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self, scheduler: "ConsensusScheduler") -> None:
        """Register the interval job; the first run fires immediately."""
        self._scheduler = scheduler
        scheduler.add_interval_job(
            self.run,
            self.JOB_ID,
            seconds=self.config.interval_minutes * 60,
            run_immediately=True,
        )
        logger.info(f"Consensus reconciler started - running every {self.config.interval_minutes} minutes")

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.remove_job(self.JOB_ID)
            self._scheduler = None
            logger.info("Consensus reconciler stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._is_running,
            "scheduled": self._scheduler is not None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_stats": self.last_stats.to_dict() if self.last_stats else None,
            "config": self.config.model_dump(),
        }

    def update_config(self, **changes: Any) -> ReconcilerSettings:
        """Validate and apply configuration changes; they take effect on the next run.

        Raises:
            ValueError: Unknown key or invalid value (pydantic ValidationError is a ValueError)
        """
        unknown = set(changes) - set(ReconcilerSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown reconciler settings: {', '.join(sorted(unknown))}")

        new_config = ReconcilerSettings.model_validate({**self.config.model_dump(), **changes})
        interval_changed = new_config.interval_minutes != self.config.interval_minutes
        self.config = new_config
        logger.info(f"Reconciler configuration updated: {changes}")

        if interval_changed and self._scheduler is not None:
            self._scheduler.add_interval_job(
                self.run,
                self.JOB_ID,
                seconds=new_config.interval_minutes * 60,
            )
        return new_config

    async def trigger_manual_run(self) -> Optional[ReconciliationStats]:
        logger.info("Manual reconciliation run triggered")
        return await self.run()

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> Optional[ReconciliationStats]:
        """
        Execute one reconciliation pass.

        Returns:
            Run statistics, or None if a run was already in flight.
        """
        if self._is_running:
            logger.info("Reconciliation already running, skipping")
            return None

        self._is_running = True
        config = self.config
        started = time.monotonic()
        stats = ReconciliationStats()

        try:
            logger.info("Starting reconciliation run")

            redelivered = await self._outbox.dispatch()
            if redelivered:
                logger.info(f"Redelivered {redelivered} queued event(s)")

            await self._process_stalled_operations(stats, config)
            await self._process_expired_operations(stats, config)
            await self._process_expiring_operations(stats, config)
            await self._verify_recent_integrity(stats, config)

            stats.duration_ms = round((time.monotonic() - started) * 1000, 3)
            stats.completed_at = self._orchestrator.now()
            self.last_run_at = stats.completed_at
            self.last_stats = stats

            logger.info(f"Reconciliation completed in {stats.duration_ms}ms: {stats.to_dict()}")
            await self._outbox.emit(EventType.RECONCILIATION_COMPLETE, {
                "stats": stats.to_dict(),
                "completed_at": stats.completed_at.isoformat(),
            })
        except Exception as e:
            stats.errors += 1
            stats.duration_ms = round((time.monotonic() - started) * 1000, 3)
            logger.exception(f"Reconciliation run failed: {e}")
            await self._outbox.emit(EventType.RECONCILIATION_ERROR, {
                "error": str(e),
                "stats": stats.to_dict(),
            })
        finally:
            self._is_running = False

        return stats

    def should_escalate(
        self,
        operation: Operation,
        hours_since_action: float,
        config: Optional[ReconcilerSettings] = None,
    ) -> bool:
        config = config or self.config
        if operation.escalation_level >= config.max_escalation_levels:
            return False
        if operation.escalation_level == 0:
            return hours_since_action >= config.first_escalation_hours
        return hours_since_action >= config.subsequent_escalation_hours

    @staticmethod
    def escalation_reason(operation: Operation, hours_since_action: float, now: datetime) -> str:
        hours_left = round((operation.expires_at - now).total_seconds() / 3600)
        return (
            f"Operation pending for {round(hours_since_action)} hours. "
            f"{operation.remaining_needed} more signature(s) needed. "
            f"Expires in {hours_left} hours."
        )

    async def _process_stalled_operations(self, stats: ReconciliationStats, config: ReconcilerSettings) -> None:
        stalled = await self._repository.get_stalled_operations(config.first_escalation_hours)

        for item in stalled[: config.batch_size]:
            stats.checked_operations += 1
            try:
                wallet = await self._store.find_by_operation(item.operation_id)
                operation = wallet.find_operation(item.operation_id) if wallet else None
                if operation is None or operation.status != OperationStatus.PENDING:
                    continue

                now = self._orchestrator.now()
                # Left to the expiration pass
                if operation.is_expired(now):
                    continue

                hours = hours_since_last_action(operation, now)
                if not self.should_escalate(operation, hours, config):
                    continue

                result = await self._orchestrator.escalate(
                    item.operation_id, self.escalation_reason(operation, hours, now)
                )
                if result is not None and result.escalated:
                    stats.escalated_operations += 1
            except Exception as e:
                logger.error(f"Error processing stalled operation {item.operation_id}: {e}")
                stats.errors += 1

    async def _process_expired_operations(self, stats: ReconciliationStats, config: ReconcilerSettings) -> None:
        expired = await self._store.find_expired_operations(
            self._orchestrator.now(), limit=config.batch_size
        )

        for operation in expired:
            stats.checked_operations += 1
            try:
                result = await self._orchestrator.expire(operation.operation_id)
                if result is not None:
                    stats.expired_operations += 1
            except Exception as e:
                logger.error(f"Error expiring operation {operation.operation_id}: {e}")
                stats.errors += 1

    async def _process_expiring_operations(self, stats: ReconciliationStats, config: ReconcilerSettings) -> None:
        now = self._orchestrator.now()
        expiring = await self._store.find_expiring_operations(
            now,
            timedelta(minutes=config.expiration_warning_minutes),
            limit=config.batch_size,
        )

        for operation in expiring:
            stats.checked_operations += 1
            try:
                wallet = await self._store.find_by_operation(operation.operation_id)
                pending_signers = wallet.pending_signers(operation) if wallet else []
                await self._outbox.emit(EventType.OPERATION_EXPIRING_SOON, {
                    "operation_id": operation.operation_id,
                    "operation_type": operation.operation_type.value,
                    "amount": str(operation.amount),
                    "workspace_id": operation.workspace_id,
                    "minutes_remaining": round((operation.expires_at - now).total_seconds() / 60),
                    "signatures_needed": operation.remaining_needed,
                    "pending_signers": pending_signers,
                })
                stats.expiring_warnings += 1
            except Exception as e:
                logger.error(f"Error warning on operation {operation.operation_id}: {e}")
                stats.errors += 1

    async def _verify_recent_integrity(self, stats: ReconciliationStats, config: ReconcilerSettings) -> None:
        operation_ids = await self._repository.get_recent_operation_ids(config.integrity_lookback_hours)
        if not operation_ids:
            return

        sample_size = min(
            config.integrity_sample_max,
            config.batch_size,
            math.ceil(len(operation_ids) * config.integrity_sample_ratio),
        )
        for operation_id in self._rng.sample(operation_ids, sample_size):
            try:
                integrity = await self._repository.verify_chain_integrity(operation_id)
            except Exception as e:
                logger.error(f"Integrity check error for {operation_id}: {e}")
                stats.errors += 1
                continue

            if not integrity.valid:
                logger.error(f"INTEGRITY VIOLATION: {operation_id} - {integrity.reason}")
                stats.integrity_violations += 1
                await self._outbox.emit(EventType.INTEGRITY_VIOLATION, {
                    "operation_id": operation_id,
                    "reason": integrity.reason,
                    "trace_id": integrity.trace_id,
                })


__all__ = ["ReconciliationStats", "ConsensusReconciler", "hours_since_last_action"]
