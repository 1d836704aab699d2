"""Tests for quorum resolution."""
from decimal import Decimal

import pytest

from multisig_consensus import (
    OperationType,
    PolicyError,
    ProofType,
    QuorumResolver,
)

from consensus_helpers import make_wallet


@pytest.fixture
def resolver():
    return QuorumResolver()


class TestTierSelection:
    """The highest tier whose min_amount <= amount wins."""

    def test_amount_below_every_tier_uses_default_quorum(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("50"), OperationType.VIRTUAL_TRANSFER)
        assert (quorum.m, quorum.n) == (2, 4)
        assert quorum.required_proof_types == [ProofType.PASSWORD]
        assert quorum.max_approval_hours == 24

    def test_tier_boundary_is_inclusive(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("5000"), OperationType.VIRTUAL_TRANSFER)
        assert quorum.m == 3

    def test_just_below_boundary_uses_lower_tier(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("4999.99"), OperationType.VIRTUAL_TRANSFER)
        assert quorum.m == 2

    def test_top_tier_carries_proof_types_and_window(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("250000"), OperationType.VAULT_WITHDRAWAL)
        assert (quorum.m, quorum.n) == (4, 4)
        assert quorum.required_proof_types == [ProofType.PASSWORD, ProofType.HARDWARE_KEY]
        assert quorum.max_approval_hours == 6
        assert quorum.threshold_percent == 100.0

    def test_tier_n_counts_only_approvers(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("1500"), OperationType.VIRTUAL_TRANSFER)
        assert quorum.n == 4
        assert quorum.threshold_percent == 50.0

    def test_tier_larger_than_roster_is_unsatisfiable(self, resolver):
        wallet = make_wallet()
        wallet.authorized_signers = wallet.authorized_signers[:3]
        with pytest.raises(PolicyError, match="Unsatisfiable"):
            resolver.resolve(wallet, Decimal("250000"), OperationType.VIRTUAL_TRANSFER)


class TestEmergencyFloor:
    def test_emergency_raises_m_to_three_quarters(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("1500"), OperationType.EMERGENCY_OVERRIDE)
        assert quorum.m == 3
        assert quorum.required_proof_types == [ProofType.HARDWARE_KEY, ProofType.BIOMETRIC]

    def test_emergency_never_lowers_m(self, resolver):
        quorum = resolver.resolve(make_wallet(), Decimal("250000"), OperationType.EMERGENCY_OVERRIDE)
        assert quorum.m == 4

    def test_emergency_floor_survives_override(self, resolver):
        quorum = resolver.resolve(
            make_wallet(),
            Decimal("1500"),
            OperationType.EMERGENCY_OVERRIDE,
            policy_override={"m": 1, "required_proof_types": ["password"]},
        )
        assert quorum.m == 3
        assert quorum.required_proof_types == [ProofType.HARDWARE_KEY, ProofType.BIOMETRIC]


class TestPolicyOverride:
    def test_override_merges_field_by_field(self, resolver):
        quorum = resolver.resolve(
            make_wallet(),
            Decimal("1500"),
            OperationType.POLICY_CHANGE,
            policy_override={"m": 3, "max_approval_hours": 48},
        )
        assert (quorum.m, quorum.n) == (3, 4)
        assert quorum.max_approval_hours == 48
        assert quorum.required_proof_types == [ProofType.PASSWORD]

    def test_override_ignored_without_inheritance(self, resolver):
        wallet = make_wallet(inherit_from_workspace=False)
        quorum = resolver.resolve(
            wallet, Decimal("1500"), OperationType.POLICY_CHANGE, policy_override={"m": 4}
        )
        assert quorum.m == 2

    def test_override_producing_m_above_n_is_rejected(self, resolver):
        with pytest.raises(PolicyError):
            resolver.resolve(
                make_wallet(), Decimal("1500"), OperationType.POLICY_CHANGE, policy_override={"m": 9}
            )

    def test_override_with_unknown_proof_type_is_rejected(self, resolver):
        with pytest.raises(PolicyError, match="proof types"):
            resolver.resolve(
                make_wallet(),
                Decimal("1500"),
                OperationType.POLICY_CHANGE,
                policy_override={"required_proof_types": ["carrier_pigeon"]},
            )

    def test_override_with_non_integer_m_is_rejected(self, resolver):
        with pytest.raises(PolicyError):
            resolver.resolve(
                make_wallet(), Decimal("1500"), OperationType.POLICY_CHANGE, policy_override={"m": "many"}
            )

    def test_apply_override_on_resolved_quorum(self, resolver):
        base = resolver.resolve(make_wallet(), Decimal("1500"), OperationType.VIRTUAL_TRANSFER)
        quorum = resolver.apply_override(base, {"m": 1}, OperationType.VIRTUAL_TRANSFER)
        assert quorum.m == 1
        assert quorum.threshold_percent == 25.0
        assert base.m == 2

    def test_zero_approval_window_is_rejected(self, resolver):
        base = resolver.resolve(make_wallet(), Decimal("1500"), OperationType.VIRTUAL_TRANSFER)
        with pytest.raises(PolicyError, match="window"):
            resolver.apply_override(base, {"max_approval_hours": 0}, OperationType.VIRTUAL_TRANSFER)


class TestLowestThreshold:
    def test_lowest_tier_of_wallet(self, resolver):
        assert resolver.lowest_threshold(make_wallet()) == Decimal("1000")

    def test_falls_back_to_default_without_wallet(self):
        resolver = QuorumResolver(default_high_value_threshold=Decimal("25000"))
        assert resolver.lowest_threshold(None) == Decimal("25000")
        assert resolver.lowest_threshold(make_wallet(threshold_rules=[])) == Decimal("25000")
