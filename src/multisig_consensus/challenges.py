"""Operation-bound challenges and the TTL store used for replay detection."""
from __future__ import annotations

import hashlib
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class Challenge:
    """A single-use value a proof must be computed against."""
    operation_id: str
    signer_id: str
    data: str
    hash: str
    nonce: str
    timestamp: int
    expires_at: int
    used: bool = False

    def is_expired(self, now: int) -> bool:
        return self.expires_at < now

    @classmethod
    def mint(cls, operation_id: str, signer_id: str, now: int, ttl_seconds: int) -> "Challenge":
        nonce = secrets.token_hex(16)
        data = f"{operation_id}:{signer_id}:{now}:{nonce}"
        return cls(
            operation_id=operation_id,
            signer_id=signer_id,
            data=data,
            hash=hashlib.sha256(data.encode()).hexdigest(),
            nonce=nonce,
            timestamp=now,
            expires_at=now + ttl_seconds,
        )


class ChallengeStore:
    """In-memory TTL-indexed challenge store.

    Injected into the ProofVerifier rather than held process-wide, so tests
    and multi-instance deployments can supply their own (e.g. a shared
    Redis-backed store with the same interface).

    Args:
        clock: Returns the current unix time in seconds.
        max_entries: Entries before a forced cleanup.
    """

    MAX_ENTRIES = 100000

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        max_entries: int = MAX_ENTRIES,
    ):
        self._challenges: dict[str, Challenge] = {}
        self._clock = clock or time.time
        self._max_entries = max_entries
        self._lock = threading.RLock()

    def now(self) -> int:
        return int(self._clock())

    def put(self, challenge: Challenge) -> None:
        with self._lock:
            if len(self._challenges) >= self._max_entries:
                self.cleanup()
            self._challenges[challenge.hash] = challenge

    def get(self, challenge_hash: str) -> Optional[Challenge]:
        with self._lock:
            return self._challenges.get(challenge_hash)

    def consume(
        self,
        challenge_hash: str,
        operation_id: str,
        signer_id: str,
    ) -> tuple[bool, str]:
        """Mark a challenge used if it is live and bound to this operation and signer.

        Returns:
            (ok, reason) where reason explains a refusal
        """
        with self._lock:
            challenge = self._challenges.get(challenge_hash)
            if challenge is None:
                return False, "Unknown or expired challenge"
            if challenge.is_expired(self.now()):
                del self._challenges[challenge_hash]
                return False, "Challenge expired"
            if challenge.used:
                return False, "Challenge already used"
            if challenge.operation_id != operation_id or challenge.signer_id != signer_id:
                return False, "Challenge not bound to this operation and signer"
            challenge.used = True
            return True, "OK"

    def cleanup(self, now: Optional[int] = None) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            if now is None:
                now = self.now()
            expired = [h for h, c in self._challenges.items() if c.is_expired(now)]
            for challenge_hash in expired:
                del self._challenges[challenge_hash]
            return len(expired)

    def stats(self) -> dict:
        """Return store statistics."""
        with self._lock:
            now = self.now()
            expired_count = sum(1 for c in self._challenges.values() if c.is_expired(now))
            used_count = sum(1 for c in self._challenges.values() if c.used)
            return {
                "total_entries": len(self._challenges),
                "expired_entries": expired_count,
                "used_entries": used_count,
                "max_entries": self._max_entries,
            }

    def __len__(self) -> int:
        return len(self._challenges)


__all__ = ["Challenge", "ChallengeStore"]
