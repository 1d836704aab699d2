"""
Wallet persistence with optimistic concurrency.

Callers load a snapshot, mutate it and write it back with the version they
loaded. A save against a stale version raises ConcurrencyConflictError and
the caller retries the whole read-modify-write. Snapshots are deep copies,
so a failed attempt never leaks into stored state.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol

from .exceptions import ConcurrencyConflictError, DuplicateOperationError
from .models import Operation, Wallet

logger = logging.getLogger(__name__)


class WalletStore(Protocol):
    """Persistence contract for Wallet aggregates."""

    async def load(self, workspace_id: str) -> Optional[Wallet]:
        ...

    async def find_by_operation(self, operation_id: str) -> Optional[Wallet]:
        ...

    async def save(self, wallet: Wallet, expected_version: int) -> Wallet:
        """Persist ``wallet`` if the stored version equals ``expected_version``."""
        ...

    async def reserve_operation_id(self, operation_id: str, workspace_id: str) -> bool:
        """Claim an operation id; False if it is already taken."""
        ...

    async def list_wallets(self) -> List[Wallet]:
        ...

    async def find_expired_operations(self, now: datetime, limit: Optional[int] = None) -> List[Operation]:
        ...

    async def find_expiring_operations(
        self,
        now: datetime,
        within: timedelta,
        limit: Optional[int] = None,
    ) -> List[Operation]:
        ...


class InMemoryWalletStore:
    """Single-process WalletStore.

    Version check and write happen under one asyncio.Lock, which makes
    ``save`` an atomic compare-and-set.
    """

    def __init__(self) -> None:
        self._wallets: Dict[str, Wallet] = {}
        self._operation_index: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def load(self, workspace_id: str) -> Optional[Wallet]:
        wallet = self._wallets.get(workspace_id)
        return copy.deepcopy(wallet) if wallet is not None else None

    async def find_by_operation(self, operation_id: str) -> Optional[Wallet]:
        workspace_id = self._operation_index.get(operation_id)
        if workspace_id is None:
            return None
        return await self.load(workspace_id)

    async def save(self, wallet: Wallet, expected_version: int) -> Wallet:
        async with self._lock:
            current = self._wallets.get(wallet.workspace_id)
            actual_version = current.version if current is not None else 0
            if actual_version != expected_version:
                raise ConcurrencyConflictError(
                    wallet.workspace_id, expected_version, actual_version
                )

            for operation in wallet.operations:
                owner = self._operation_index.get(operation.operation_id)
                if owner is not None and owner != wallet.workspace_id:
                    raise DuplicateOperationError(operation.operation_id)

            stored = copy.deepcopy(wallet)
            stored.version = expected_version + 1
            self._wallets[wallet.workspace_id] = stored
            for operation in stored.operations:
                self._operation_index[operation.operation_id] = wallet.workspace_id

            wallet.version = stored.version
            logger.debug(
                "Saved wallet %s at version %d", wallet.workspace_id, stored.version
            )
            return copy.deepcopy(stored)

    async def reserve_operation_id(self, operation_id: str, workspace_id: str) -> bool:
        async with self._lock:
            if operation_id in self._operation_index:
                return False
            self._operation_index[operation_id] = workspace_id
            return True

    async def list_wallets(self) -> List[Wallet]:
        return [copy.deepcopy(w) for w in self._wallets.values()]

    async def find_expired_operations(self, now: datetime, limit: Optional[int] = None) -> List[Operation]:
        """PENDING operations whose expiry has passed, oldest expiry first."""
        found = [
            op for wallet in self._wallets.values()
            for op in wallet.pending_operations()
            if op.is_expired(now)
        ]
        found.sort(key=lambda op: op.expires_at)
        return [copy.deepcopy(op) for op in found[:limit]]

    async def find_expiring_operations(
        self,
        now: datetime,
        within: timedelta,
        limit: Optional[int] = None,
    ) -> List[Operation]:
        """PENDING operations expiring in (now, now + within]."""
        horizon = now + within
        found = [
            op for wallet in self._wallets.values()
            for op in wallet.pending_operations()
            if now < op.expires_at <= horizon
        ]
        found.sort(key=lambda op: op.expires_at)
        return [copy.deepcopy(op) for op in found[:limit]]


__all__ = ["WalletStore", "InMemoryWalletStore"]
