"""Ordered event outbox for consensus notifications.

Producers (orchestrator, reconciler) publish after their state change has
been persisted; consumers (notification delivery, webhooks, audit
forwarders) subscribe by pattern. Delivery is at-least-once: an event
stays queued until every matching handler has accepted it, and a failed
handler is retried on a later dispatch without re-delivering to the
handlers that already succeeded.

``emit`` only attempts the events that have never been tried, so a broken
consumer does not slow down the caller. Failed events are retried by
``dispatch`` (the reconciler calls it every run) and move to the dead
letter list after ``max_attempts`` tries, or when the queue is full.

Handlers may call back into the orchestrator. An ``emit`` made while a
flush is in progress only queues its event; the running flush delivers it
after the events ahead of it.
"""
from __future__ import annotations

import asyncio
import fnmatch
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .models import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_MAX_PENDING = 1000


class EventType(str, Enum):
    OPERATION_INITIATED = "operation.initiated"
    SIGNATURE_SUBMITTED = "signature.submitted"
    QUORUM_REACHED = "quorum.reached"
    OPERATION_REJECTED = "operation.rejected"
    OPERATION_EXECUTED = "operation.executed"
    OPERATION_ESCALATED = "operation.escalated"
    OPERATION_EXPIRED = "operation.expired"
    OPERATION_EXPIRING_SOON = "operation.expiring_soon"
    INTEGRITY_VIOLATION = "integrity.violation"
    RECONCILIATION_COMPLETE = "reconciliation.complete"
    RECONCILIATION_ERROR = "reconciliation.error"


@dataclass
class ConsensusEvent:
    """A queued notification."""
    event_type: EventType
    data: Dict[str, Any]
    sequence: int
    created_at: datetime
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:16]}")
    attempts: int = 0
    last_error: Optional[str] = None
    delivered_to: set[int] = field(default_factory=set, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
            "data": self.data,
        }


class EventOutbox:
    """
    In-process ordered outbox.

    Args:
        history_limit: Number of published events kept for inspection
        max_attempts: Delivery attempts before an event is dead-lettered
        max_pending: Queue length above which the oldest events are dead-lettered
        clock: Returns the current UTC datetime

    Example:
        outbox = EventOutbox()
        outbox.subscribe("operation.*", notify_signers)
        await outbox.emit(EventType.OPERATION_INITIATED, {"operation_id": op_id})
    """

    def __init__(
        self,
        history_limit: int = 10000,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        max_pending: int = DEFAULT_MAX_PENDING,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_attempts < 1 or max_pending < 1:
            raise ValueError("max_attempts and max_pending must be positive")
        self._subscribers: Dict[str, List[Callable]] = {}
        self._queue: List[ConsensusEvent] = []
        self._dead_letters: List[ConsensusEvent] = []
        self._history: List[ConsensusEvent] = []
        self._history_limit = history_limit
        self._max_attempts = max_attempts
        self._max_pending = max_pending
        self._clock = clock or utc_now
        self._sequence = itertools.count(1)
        self._flushing = False

    def subscribe(self, event_pattern: str, handler: Callable) -> None:
        """Subscribe a sync or async handler to events matching a pattern (e.g. 'operation.*')."""
        handlers = self._subscribers.setdefault(event_pattern, [])
        if handler not in handlers:
            handlers.append(handler)
            logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), event_pattern)

    def unsubscribe(self, event_pattern: str, handler: Callable) -> None:
        handlers = self._subscribers.get(event_pattern)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._subscribers[event_pattern]

    def publish(self, event_type: EventType, data: Dict[str, Any]) -> ConsensusEvent:
        """Queue an event without delivering it."""
        event = ConsensusEvent(
            event_type=event_type,
            data=data,
            sequence=next(self._sequence),
            created_at=self._clock(),
        )
        self._queue.append(event)
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        overflow = len(self._queue) - self._max_pending
        if overflow > 0:
            for dropped in self._queue[:overflow]:
                self._dead_letter(dropped, "outbox full")
            del self._queue[:overflow]
        return event

    async def emit(self, event_type: EventType, data: Dict[str, Any]) -> ConsensusEvent:
        """Queue an event and deliver every event not yet attempted."""
        event = self.publish(event_type, data)
        await self._flush(retry_failed=False)
        return event

    async def dispatch(self) -> int:
        """Deliver queued events in publish order, retrying earlier failures.

        Returns:
            Number of events fully delivered and removed from the queue.
        """
        return await self._flush(retry_failed=True)

    async def _flush(self, retry_failed: bool) -> int:
        if self._flushing:
            return 0

        self._flushing = True
        try:
            delivered = 0
            attempted: Set[int] = set()
            while True:
                batch = [
                    e for e in self._queue
                    if id(e) not in attempted and (retry_failed or e.attempts == 0)
                ]
                if not batch:
                    return delivered
                for event in batch:
                    attempted.add(id(event))
                    if event not in self._queue:
                        continue
                    if await self._deliver(event):
                        self._queue.remove(event)
                        delivered += 1
                    elif event.attempts >= self._max_attempts:
                        self._queue.remove(event)
                        self._dead_letter(event, event.last_error or "delivery failed")
        finally:
            self._flushing = False

    async def _deliver(self, event: ConsensusEvent) -> bool:
        event.attempts += 1
        complete = True
        for handler in self._matching_handlers(event.event_type.value):
            key = id(handler)
            if key in event.delivered_to:
                continue
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
                event.delivered_to.add(key)
            except Exception as e:
                complete = False
                event.last_error = str(e)
                logger.error(
                    "Handler %s failed for %s (event %s, attempt %d): %s",
                    getattr(handler, "__name__", handler),
                    event.event_type.value,
                    event.event_id,
                    event.attempts,
                    e,
                    exc_info=True,
                )
        return complete

    def _dead_letter(self, event: ConsensusEvent, reason: str) -> None:
        event.last_error = reason
        self._dead_letters.append(event)
        if len(self._dead_letters) > self._history_limit:
            del self._dead_letters[: len(self._dead_letters) - self._history_limit]
        logger.warning(
            "Event %s (%s) dead-lettered after %d attempt(s): %s",
            event.event_id,
            event.event_type.value,
            event.attempts,
            reason,
        )

    def _matching_handlers(self, event_type: str) -> List[Callable]:
        handlers: List[Callable] = []
        for pattern, subscribed in self._subscribers.items():
            if fnmatch.fnmatch(event_type, pattern):
                handlers.extend(h for h in subscribed if h not in handlers)
        return handlers

    def pending(self) -> List[ConsensusEvent]:
        """Events not yet accepted by every matching handler."""
        return list(self._queue)

    def dead_letters(self) -> List[ConsensusEvent]:
        """Events given up on, oldest first."""
        return list(self._dead_letters)

    def history(self, event_type: Optional[EventType] = None) -> List[ConsensusEvent]:
        """Published events in order, optionally filtered by type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if e.event_type == event_type]

    def clear_subscribers(self) -> None:
        self._subscribers.clear()


__all__ = ["EventType", "ConsensusEvent", "EventOutbox", "DEFAULT_MAX_ATTEMPTS", "DEFAULT_MAX_PENDING"]
