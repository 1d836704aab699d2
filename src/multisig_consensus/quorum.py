"""
Quorum resolution.

Maps (wallet policy, amount, operation type) to the quorum an operation must
collect. Resolution is pure: the optional workspace policy override is
fetched by the caller and passed in.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .exceptions import PolicyError
from .models import (
    STRONGEST_PROOF_TYPES,
    OperationType,
    ProofType,
    Wallet,
)

DEFAULT_HIGH_VALUE_THRESHOLD = Decimal("10000")
DEFAULT_APPROVAL_HOURS = 24
EMERGENCY_QUORUM_RATIO = 0.75


@dataclass(frozen=True)
class Quorum:
    """Resolved requirement for a single operation."""
    m: int
    n: int
    threshold_percent: float
    required_proof_types: List[ProofType] = field(default_factory=list)
    max_approval_hours: int = DEFAULT_APPROVAL_HOURS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "m": self.m,
            "n": self.n,
            "threshold_percent": self.threshold_percent,
            "required_proof_types": [p.value for p in self.required_proof_types],
            "max_approval_hours": self.max_approval_hours,
        }


class PolicyProvider(Protocol):
    """Source of workspace-level quorum overrides (external policy engine)."""

    async def get_quorum_override(self, workspace_id: str) -> Optional[Mapping[str, Any]]:
        """Return a partial quorum ({m, n, required_proof_types, max_approval_hours}) or None."""
        ...


def _percent(m: int, n: int) -> float:
    return round(m / n * 100, 2) if n else 0.0


def _coerce_proof_types(values: Any) -> List[ProofType]:
    try:
        return [v if isinstance(v, ProofType) else ProofType(str(v).lower()) for v in values]
    except (TypeError, ValueError) as e:
        raise PolicyError(f"Invalid proof types in quorum override: {values!r}") from e


class QuorumResolver:
    """Pure quorum resolution for a wallet policy."""

    def __init__(
        self,
        default_high_value_threshold: Decimal = DEFAULT_HIGH_VALUE_THRESHOLD,
        default_approval_hours: int = DEFAULT_APPROVAL_HOURS,
    ):
        self.default_high_value_threshold = default_high_value_threshold
        self.default_approval_hours = default_approval_hours

    def base_quorum(self, wallet: Wallet, amount: Decimal) -> Quorum:
        """Tier with the greatest min_amount <= amount, else the default quorum."""
        tiers = sorted(wallet.threshold_rules, key=lambda r: r.min_amount, reverse=True)
        for rule in tiers:
            if rule.applies_to(amount):
                n = len(wallet.approvers())
                return Quorum(
                    m=rule.required_m,
                    n=n,
                    threshold_percent=_percent(rule.required_m, n),
                    required_proof_types=list(rule.required_proof_types),
                    max_approval_hours=rule.max_approval_hours,
                )

        default = wallet.default_quorum
        return Quorum(
            m=default.m,
            n=default.n,
            threshold_percent=_percent(default.m, default.n),
            required_proof_types=[ProofType.PASSWORD],
            max_approval_hours=self.default_approval_hours,
        )

    def resolve(
        self,
        wallet: Wallet,
        amount: Decimal,
        operation_type: OperationType,
        policy_override: Optional[Mapping[str, Any]] = None,
    ) -> Quorum:
        """
        Resolve the quorum for an operation.

        Args:
            wallet: Wallet whose policy applies
            amount: Operation amount in base currency
            operation_type: Kind of operation
            policy_override: Partial quorum from the workspace policy (field merge)

        Returns:
            Quorum with 1 <= m <= n

        Raises:
            PolicyError: If the policy or override yields an unsatisfiable quorum
        """
        quorum = self.base_quorum(wallet, amount)

        if policy_override and wallet.inherit_from_workspace:
            quorum = self._merge_override(quorum, policy_override)

        quorum = self._apply_operation_floor(quorum, operation_type)
        self._validate(quorum)
        return quorum

    def apply_override(
        self,
        quorum: Quorum,
        override: Mapping[str, Any],
        operation_type: OperationType,
    ) -> Quorum:
        """Merge a caller-supplied partial quorum onto a resolved one.

        The emergency floor still applies afterwards.

        Raises:
            PolicyError: If the merged quorum is unsatisfiable
        """
        quorum = self._merge_override(quorum, override)
        quorum = self._apply_operation_floor(quorum, operation_type)
        self._validate(quorum)
        return quorum

    def lowest_threshold(self, wallet: Optional[Wallet]) -> Decimal:
        """Smallest amount that triggers multi-sig for a wallet."""
        if wallet is None or not wallet.threshold_rules:
            return self.default_high_value_threshold
        return min(rule.min_amount for rule in wallet.threshold_rules)

    @staticmethod
    def _apply_operation_floor(quorum: Quorum, operation_type: OperationType) -> Quorum:
        if operation_type != OperationType.EMERGENCY_OVERRIDE:
            return quorum
        m = max(quorum.m, math.ceil(quorum.n * EMERGENCY_QUORUM_RATIO))
        return replace(
            quorum,
            m=m,
            threshold_percent=_percent(m, quorum.n),
            required_proof_types=list(STRONGEST_PROOF_TYPES),
        )

    def _merge_override(self, quorum: Quorum, override: Mapping[str, Any]) -> Quorum:
        changes: Dict[str, Any] = {}
        try:
            if "m" in override:
                changes["m"] = int(override["m"])
            if "n" in override:
                changes["n"] = int(override["n"])
            if "max_approval_hours" in override:
                changes["max_approval_hours"] = int(override["max_approval_hours"])
        except (TypeError, ValueError) as e:
            raise PolicyError(f"Invalid quorum override: {dict(override)!r}") from e
        if "required_proof_types" in override:
            changes["required_proof_types"] = _coerce_proof_types(override["required_proof_types"])
        merged = replace(quorum, **changes)
        return replace(merged, threshold_percent=_percent(merged.m, merged.n))

    @staticmethod
    def _validate(quorum: Quorum) -> None:
        if quorum.m < 1 or quorum.n < 1 or quorum.m > quorum.n:
            raise PolicyError(
                f"Unsatisfiable quorum {quorum.m}-of-{quorum.n}: require 1 <= m <= n",
                details={"m": quorum.m, "n": quorum.n},
            )
        if quorum.max_approval_hours <= 0:
            raise PolicyError(
                "Approval window must be positive",
                details={"max_approval_hours": quorum.max_approval_hours},
            )


__all__ = [
    "DEFAULT_HIGH_VALUE_THRESHOLD",
    "Quorum",
    "PolicyProvider",
    "QuorumResolver",
]
