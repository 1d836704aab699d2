"""Tests for the multi-signature orchestrator."""
import asyncio
from decimal import Decimal

import pytest

from multisig_consensus import (
    AuthorizationError,
    AuthorizedSigner,
    ConcurrencyConflictError,
    EventType,
    InMemoryWalletStore,
    InvalidStateError,
    MultiSigOrchestrator,
    NotFoundError,
    OperationStatus,
    OperationType,
    PolicyError,
    ProofType,
    ProofVerificationError,
    QuorumPolicy,
    SignerRole,
    ThresholdRule,
    TraceEventType,
    aggregate_signatures,
)

from consensus_helpers import WORKSPACE_ID, make_wallet, password_proof


async def _initiate(orchestrator, amount="2500", operation_type=OperationType.VIRTUAL_TRANSFER,
                    initiator_id="alice", workspace_id=WORKSPACE_ID, **kwargs):
    return await orchestrator.initiate(
        workspace_id,
        operation_type,
        {"destination": "acct_supplier_77", "memo": "Q1 invoice"},
        Decimal(amount),
        initiator_id,
        **kwargs,
    )


async def _sign(orchestrator, clock, operation_id, signer_id, **kwargs):
    proof = password_proof(orchestrator.verifier, clock, operation_id, signer_id)
    return await orchestrator.submit_signature(
        operation_id, signer_id, ProofType.PASSWORD, proof, **kwargs
    )


async def _operation(orchestrator, operation_id):
    wallet = await orchestrator.store.find_by_operation(operation_id)
    return wallet.get_operation(operation_id)


class SlowWalletStore(InMemoryWalletStore):
    """Yields on every read so concurrent writers interleave."""

    async def find_by_operation(self, operation_id):
        await asyncio.sleep(0.01)
        return await super().find_by_operation(operation_id)


class AlwaysConflictingStore(InMemoryWalletStore):
    def __init__(self):
        super().__init__()
        self.conflicting = False
        self.save_attempts = 0

    async def save(self, wallet, expected_version):
        if self.conflicting:
            self.save_attempts += 1
            raise ConcurrencyConflictError(wallet.workspace_id, expected_version, expected_version + 1)
        return await super().save(wallet, expected_version)


class StaticPolicyProvider:
    def __init__(self, override):
        self.override = override
        self.calls = []

    async def get_quorum_override(self, workspace_id):
        self.calls.append(workspace_id)
        return self.override


class TestWallets:
    async def test_default_wallet_created_once(self, orchestrator):
        first = await orchestrator.get_or_create_wallet("ws_fresh_000001")
        second = await orchestrator.get_or_create_wallet("ws_fresh_000001")
        assert first.name == "Default Treasury Wallet"
        assert first.version == second.version == 1

    async def test_register_rejects_unsatisfiable_policy(self, orchestrator):
        wallet = make_wallet()
        wallet.default_quorum = QuorumPolicy(m=0, n=3)
        with pytest.raises(PolicyError):
            await orchestrator.register_wallet(wallet)

    async def test_register_replaces_existing(self, orchestrator, wallet):
        updated = make_wallet()
        updated.name = "Renamed"
        saved = await orchestrator.register_wallet(updated)
        assert saved.version == wallet.version + 1
        assert (await orchestrator.store.load(WORKSPACE_ID)).name == "Renamed"


class TestInitiate:
    async def test_initiate_opens_pending_operation(self, orchestrator, wallet, clock, outbox, repository):
        result = await _initiate(orchestrator)

        assert result.status == OperationStatus.PENDING
        assert result.operation_id.startswith("mso_000123_virt_")
        assert (result.required_signatures, result.total_eligible_signers) == (2, 4)
        assert result.required_proof_types == [ProofType.PASSWORD]
        assert (result.expires_at - clock()).total_seconds() == 24 * 3600
        assert result.to_dict()["status"] == "pending"

        history = await repository.get_operation_history(result.operation_id)
        assert [t.event_type for t in history] == [TraceEventType.INITIATED]
        assert history[0].amount == Decimal("2500")

        [event] = outbox.history(EventType.OPERATION_INITIATED)
        assert event.data["eligible_signers"] == ["owner_olivia", "alice", "bob", "carol"]
        assert event.created_at == clock()

    async def test_operation_ids_are_unique(self, orchestrator, wallet):
        ids = {(await _initiate(orchestrator)).operation_id for _ in range(5)}
        assert len(ids) == 5

    async def test_viewer_cannot_initiate(self, orchestrator, wallet, repository):
        with pytest.raises(AuthorizationError):
            await _initiate(orchestrator, initiator_id="viewer_vic")
        assert (await orchestrator.store.load(WORKSPACE_ID)).operations == []

    async def test_stranger_cannot_initiate_on_default_wallet(self, orchestrator):
        with pytest.raises(AuthorizationError):
            await _initiate(orchestrator, workspace_id="ws_unconfigured_1")

    async def test_emergency_override_gets_stronger_quorum(self, orchestrator, wallet):
        result = await _initiate(orchestrator, amount="1500", operation_type=OperationType.EMERGENCY_OVERRIDE)
        assert result.required_signatures == 3
        assert result.required_proof_types == [ProofType.HARDWARE_KEY, ProofType.BIOMETRIC]

    async def test_caller_quorum_override(self, orchestrator, wallet):
        result = await _initiate(orchestrator, quorum_override={"m": 3, "max_approval_hours": 2})
        assert result.required_signatures == 3
        assert result.threshold_percent == 75.0

    async def test_unsatisfiable_override_is_rejected(self, orchestrator, wallet):
        with pytest.raises(PolicyError):
            await _initiate(orchestrator, quorum_override={"m": 9})
        assert (await orchestrator.store.load(WORKSPACE_ID)).operations == []

    async def test_workspace_policy_override(self, wallet_store, repository, verifier, outbox, settings, clock):
        provider = StaticPolicyProvider({"m": 4})
        orchestrator = MultiSigOrchestrator(
            wallet_store=wallet_store,
            repository=repository,
            verifier=verifier,
            outbox=outbox,
            policy_provider=provider,
            settings=settings,
            clock=clock,
        )
        await orchestrator.register_wallet(make_wallet())

        result = await _initiate(orchestrator)
        assert result.required_signatures == 4
        assert provider.calls == [WORKSPACE_ID]


class TestScenarioA:
    """Tier quorum of 3 overrides a default 2-of-3."""

    async def test_tier_quorum_approves_on_third_signature(self, orchestrator, clock, outbox):
        wallet = make_wallet(
            workspace_id="ws_scenario_00000a",
            signers=[
                AuthorizedSigner(user_id="owner_olivia", role=SignerRole.OWNER, can_reject=True),
                AuthorizedSigner(user_id="alice"),
                AuthorizedSigner(user_id="bob"),
            ],
            threshold_rules=[ThresholdRule(min_amount=Decimal("5000"), required_m=3)],
        )
        wallet.default_quorum = QuorumPolicy(m=2, n=3)
        await orchestrator.register_wallet(wallet)

        result = await _initiate(
            orchestrator,
            amount="6000",
            operation_type=OperationType.VAULT_WITHDRAWAL,
            workspace_id="ws_scenario_00000a",
        )
        assert result.required_signatures == 3

        clock.advance(minutes=10)
        await _sign(orchestrator, clock, result.operation_id, "alice")
        clock.advance(minutes=10)
        summary = await _sign(orchestrator, clock, result.operation_id, "bob")
        assert summary.status == OperationStatus.PENDING
        assert summary.remaining_needed == 1
        assert summary.resolved_at is None

        clock.advance(minutes=10)
        summary = await _sign(orchestrator, clock, result.operation_id, "owner_olivia")
        assert summary.status == OperationStatus.APPROVED
        assert summary.resolved_at == clock()
        assert summary.collected_signatures == 3

        stored = await orchestrator.store.load("ws_scenario_00000a")
        assert stored.stats.approved_operations == 1
        assert stored.stats.average_approval_time_ms == 30 * 60 * 1000
        assert len(outbox.history(EventType.QUORUM_REACHED)) == 1


class TestSubmitSignature:
    async def test_quorum_reached_event_carries_aggregate(self, orchestrator, wallet, clock, outbox, repository):
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "bob")
        summary = await _sign(orchestrator, clock, result.operation_id, "alice", device_fingerprint="dev-1")

        assert summary.status == OperationStatus.APPROVED
        operation = await _operation(orchestrator, result.operation_id)
        expected = aggregate_signatures(operation.verified_signatures())

        [event] = outbox.history(EventType.QUORUM_REACHED)
        assert event.data["aggregated_hash"] == expected.aggregated_hash
        assert event.data["signers"] == ["bob", "alice"]
        assert event.data["payload"]["destination"] == "acct_supplier_77"

        history = await repository.get_operation_history(result.operation_id)
        assert [t.event_type for t in history] == [
            TraceEventType.INITIATED,
            TraceEventType.SIGNATURE,
            TraceEventType.APPROVED,
        ]
        assert history[-1].device_fingerprint == "dev-1"

    async def test_signature_records_verification_method(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        summary = await _sign(orchestrator, clock, result.operation_id, "bob")
        assert summary.signers[0]["verification_method"] == "PASSWORD_HASH"
        operation = await _operation(orchestrator, result.operation_id)
        assert len(operation.signatures[0].signature_hash) == 64

    async def test_duplicate_signature_is_rejected(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator, amount="6000")
        await _sign(orchestrator, clock, result.operation_id, "bob")

        with pytest.raises(InvalidStateError, match="already signed"):
            await _sign(orchestrator, clock, result.operation_id, "bob")
        assert (await _operation(orchestrator, result.operation_id)).collected_signatures == 1

    async def test_invalid_proof_is_recorded_and_operation_stays_pending(
        self, orchestrator, wallet, clock, repository
    ):
        result = await _initiate(orchestrator)
        proof = password_proof(orchestrator.verifier, clock, result.operation_id, "bob", digest="0" * 64)

        with pytest.raises(ProofVerificationError) as exc:
            await orchestrator.submit_signature(
                result.operation_id, "bob", ProofType.PASSWORD, proof, ip_address="10.0.0.8"
            )
        assert exc.value.reason == "Invalid password proof"
        assert exc.value.http_status == 422

        operation = await _operation(orchestrator, result.operation_id)
        assert operation.status == OperationStatus.PENDING
        assert operation.signatures == []

        history = await repository.get_operation_history(result.operation_id)
        assert history[-1].event_type == TraceEventType.SIGNATURE_FAILED
        assert history[-1].ip_address == "10.0.0.8"
        assert (await repository.verify_chain_integrity(result.operation_id)).valid

        # The signer can still sign with a correct proof
        summary = await _sign(orchestrator, clock, result.operation_id, "bob")
        assert summary.collected_signatures == 1

    async def test_replayed_proof_is_rejected(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator, amount="6000")
        proof = password_proof(orchestrator.verifier, clock, result.operation_id, "bob")
        await orchestrator.submit_signature(result.operation_id, "bob", ProofType.PASSWORD, proof)

        with pytest.raises(ProofVerificationError) as exc:
            await orchestrator.submit_signature(result.operation_id, "alice", ProofType.PASSWORD, proof)
        assert exc.value.reason == "Challenge already used"

    async def test_foreign_challenge_is_rejected(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        proof = password_proof(orchestrator.verifier, clock, result.operation_id, "bob")
        with pytest.raises(ProofVerificationError) as exc:
            await orchestrator.submit_signature(result.operation_id, "alice", ProofType.PASSWORD, proof)
        assert exc.value.reason == "Challenge not bound to this operation and signer"

    async def test_proof_type_not_accepted_for_operation(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator, amount="250000")
        with pytest.raises(ProofVerificationError) as exc:
            await orchestrator.submit_signature(result.operation_id, "bob", ProofType.TOTP, {"token": "123456"})
        assert exc.value.reason == "Proof type totp not accepted for this operation"

    async def test_proof_type_not_permitted_for_signer(self, orchestrator, clock):
        wallet = make_wallet()
        wallet.get_signer("carol").required_proof_types = [ProofType.HARDWARE_KEY]
        await orchestrator.register_wallet(wallet)
        result = await _initiate(orchestrator)

        with pytest.raises(ProofVerificationError) as exc:
            await _sign(orchestrator, clock, result.operation_id, "carol")
        assert exc.value.reason == "Proof type password not permitted for this signer"

    async def test_unknown_proof_type(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        with pytest.raises(ProofVerificationError) as exc:
            await orchestrator.submit_signature(result.operation_id, "bob", "carrier_pigeon", {})
        assert exc.value.reason == "Unsupported proof type: carrier_pigeon"

    async def test_viewer_cannot_sign(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        with pytest.raises(AuthorizationError):
            await _sign(orchestrator, clock, result.operation_id, "viewer_vic")

    async def test_unknown_operation(self, orchestrator, wallet, clock):
        with pytest.raises(NotFoundError):
            await _sign(orchestrator, clock, "mso_missing", "bob")

    async def test_signing_after_approval(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "bob")
        await _sign(orchestrator, clock, result.operation_id, "alice")
        with pytest.raises(InvalidStateError):
            await _sign(orchestrator, clock, result.operation_id, "carol")

    async def test_signing_after_expiry(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        clock.advance(hours=24, seconds=1)
        with pytest.raises(InvalidStateError, match="expired"):
            await _sign(orchestrator, clock, result.operation_id, "bob")


class TestQuorumRace:
    """Concurrent signatures against one operation."""

    async def test_concurrent_signatures_approve_exactly_once(
        self, repository, verifier, outbox, settings, clock
    ):
        orchestrator = MultiSigOrchestrator(
            wallet_store=SlowWalletStore(),
            repository=repository,
            verifier=verifier,
            outbox=outbox,
            settings=settings,
            clock=clock,
        )
        await orchestrator.register_wallet(make_wallet())
        result = await _initiate(orchestrator)

        outcomes = await asyncio.gather(
            *(_sign(orchestrator, clock, result.operation_id, signer) for signer in ("alice", "bob", "carol")),
            return_exceptions=True,
        )

        succeeded = [o for o in outcomes if not isinstance(o, Exception)]
        failed = [o for o in outcomes if isinstance(o, Exception)]
        assert len(succeeded) == 2
        assert len(failed) == 1
        assert isinstance(failed[0], InvalidStateError)

        operation = await _operation(orchestrator, result.operation_id)
        assert operation.status == OperationStatus.APPROVED
        assert operation.collected_signatures == 2

        history = await repository.get_operation_history(result.operation_id)
        assert [t.event_type for t in history].count(TraceEventType.APPROVED) == 1
        assert len(outbox.history(EventType.QUORUM_REACHED)) == 1
        assert (await repository.verify_chain_integrity(result.operation_id)).valid

    async def test_gives_up_after_retries(self, repository, verifier, outbox, settings, clock):
        store = AlwaysConflictingStore()
        orchestrator = MultiSigOrchestrator(
            wallet_store=store,
            repository=repository,
            verifier=verifier,
            outbox=outbox,
            settings=settings,
            clock=clock,
        )
        await orchestrator.register_wallet(make_wallet())
        result = await _initiate(orchestrator)

        store.conflicting = True
        with pytest.raises(ConcurrencyConflictError):
            await orchestrator.reject(result.operation_id, "owner_olivia", "duplicate invoice")

        assert store.save_attempts == settings.concurrency_retries
        history = await repository.get_operation_history(result.operation_id)
        assert [t.event_type for t in history] == [TraceEventType.INITIATED]
        assert outbox.history(EventType.OPERATION_REJECTED) == []


class TestScenarioD:
    """Only a privileged rejection vetoes an operation."""

    async def test_signer_reject_records_owner_reject_vetoes(self, orchestrator, wallet, outbox):
        result = await _initiate(orchestrator)

        summary = await orchestrator.reject(result.operation_id, "bob", "amount looks wrong")
        assert summary.status == OperationStatus.PENDING
        assert summary.rejection_count == 1

        summary = await orchestrator.reject(result.operation_id, "owner_olivia", "not budgeted")
        assert summary.status == OperationStatus.REJECTED
        assert summary.rejection_count == 2
        assert summary.resolved_by == "owner_olivia"

        assert [e.data["is_final"] for e in outbox.history(EventType.OPERATION_REJECTED)] == [False, True]
        stored = await orchestrator.store.load(WORKSPACE_ID)
        assert stored.stats.rejected_operations == 1

    async def test_reject_requires_capability(self, orchestrator, wallet):
        result = await _initiate(orchestrator)
        with pytest.raises(AuthorizationError):
            await orchestrator.reject(result.operation_id, "viewer_vic")

    async def test_cannot_reject_approved(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "bob")
        await _sign(orchestrator, clock, result.operation_id, "alice")
        with pytest.raises(InvalidStateError, match="not pending"):
            await orchestrator.reject(result.operation_id, "owner_olivia")

    async def test_rejected_operation_cannot_be_signed(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        await orchestrator.reject(result.operation_id, "owner_olivia")
        with pytest.raises(InvalidStateError):
            await _sign(orchestrator, clock, result.operation_id, "bob")


class TestExecute:
    async def _approved(self, orchestrator, clock):
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "bob")
        await _sign(orchestrator, clock, result.operation_id, "alice")
        return result.operation_id

    async def test_execute_releases_payload(self, orchestrator, wallet, clock, outbox, repository):
        operation_id = await self._approved(orchestrator, clock)
        clock.advance(minutes=3)

        executed = await orchestrator.execute(operation_id, "owner_olivia")

        assert executed.status == OperationStatus.EXECUTED
        assert executed.payload["memo"] == "Q1 invoice"
        assert executed.executed_at == clock()
        assert outbox.history(EventType.OPERATION_EXECUTED)[0].data["executor_id"] == "owner_olivia"
        status = await repository.get_operation_status(operation_id)
        assert status["status"] == "executed"

    async def test_execute_twice_is_refused(self, orchestrator, wallet, clock):
        operation_id = await self._approved(orchestrator, clock)
        await orchestrator.execute(operation_id, "owner_olivia")
        with pytest.raises(InvalidStateError):
            await orchestrator.execute(operation_id, "owner_olivia")

    async def test_execute_pending_is_refused(self, orchestrator, wallet):
        result = await _initiate(orchestrator)
        with pytest.raises(InvalidStateError, match="not approved"):
            await orchestrator.execute(result.operation_id, "owner_olivia")

    async def test_outsider_cannot_execute(self, orchestrator, wallet, clock):
        operation_id = await self._approved(orchestrator, clock)
        with pytest.raises(AuthorizationError):
            await orchestrator.execute(operation_id, "mallory")

    async def test_quorum_handler_can_execute(self, orchestrator, wallet, clock, outbox):
        """A quorum.reached subscriber may drive the orchestrator itself."""
        executed = []

        async def auto_execute(event):
            result = await orchestrator.execute(event.data["operation_id"], "owner_olivia")
            executed.append(result.operation_id)

        outbox.subscribe(EventType.QUORUM_REACHED.value, auto_execute)
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "alice")
        summary = await asyncio.wait_for(
            _sign(orchestrator, clock, result.operation_id, "bob"), timeout=3
        )

        assert summary.status == OperationStatus.APPROVED
        assert executed == [result.operation_id]
        assert (await _operation(orchestrator, result.operation_id)).status == OperationStatus.EXECUTED
        assert [e.event_type for e in outbox.history()][-2:] == [
            EventType.QUORUM_REACHED,
            EventType.OPERATION_EXECUTED,
        ]
        assert outbox.pending() == []


class TestEscalateAndExpire:
    async def test_escalation_is_capped(self, orchestrator, wallet, clock, repository):
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "bob")

        levels = []
        for _ in range(3):
            clock.advance(hours=5)
            escalation = await orchestrator.escalate(result.operation_id, "stalled")
            levels.append(escalation.escalation_level)
        assert levels == [1, 2, 3]
        assert "bob" not in escalation.pending_signers
        assert escalation.pending_signer_count == 3

        capped = await orchestrator.escalate(result.operation_id, "stalled")
        assert capped.escalated is False
        assert capped.escalation_level == 3

        operation = await _operation(orchestrator, result.operation_id)
        assert [r.level for r in operation.escalation_history] == [1, 2, 3]
        history = await repository.get_operation_history(result.operation_id)
        assert [t.event_type for t in history].count(TraceEventType.ESCALATED) == 3

    async def test_escalating_resolved_operation_is_a_no_op(self, orchestrator, wallet):
        result = await _initiate(orchestrator)
        await orchestrator.reject(result.operation_id, "owner_olivia")
        assert await orchestrator.escalate(result.operation_id, "stalled") is None

    async def test_expire_before_deadline_is_refused(self, orchestrator, wallet):
        result = await _initiate(orchestrator)
        with pytest.raises(InvalidStateError):
            await orchestrator.expire(result.operation_id)

    async def test_expire_after_deadline(self, orchestrator, wallet, clock, outbox):
        result = await _initiate(orchestrator)
        await _sign(orchestrator, clock, result.operation_id, "bob")
        clock.advance(hours=25)

        expired = await orchestrator.expire(result.operation_id)
        assert expired.quorum_state.to_dict() == {"required": 2, "collected": 1, "remaining": 1, "eligible": 4}
        assert expired.expired_at == clock()
        assert outbox.history(EventType.OPERATION_EXPIRED)[0].data["quorum_state"]["collected"] == 1

        assert await orchestrator.expire(result.operation_id) is None
        summary = await orchestrator.get_operation_summary(result.operation_id)
        assert summary.status == OperationStatus.EXPIRED


class TestQueries:
    async def test_requires_multisig(self, orchestrator, wallet):
        below = await orchestrator.requires_multisig(WORKSPACE_ID, Decimal("500"))
        above = await orchestrator.requires_multisig(WORKSPACE_ID, Decimal("1500"))
        assert below.required is False
        assert below.threshold == Decimal("1000")
        assert above.required is True
        assert above.quorum.m == 2

    async def test_requires_multisig_without_wallet_uses_default(self, orchestrator):
        requirement = await orchestrator.requires_multisig("ws_unknown_000001", Decimal("9999"))
        assert requirement.required is False
        assert requirement.threshold == Decimal("10000")
        assert requirement.quorum is None

    async def test_pending_for_user(self, orchestrator, wallet, clock):
        first = await _initiate(orchestrator)
        second = await _initiate(orchestrator, amount="6000")
        await _sign(orchestrator, clock, first.operation_id, "carol")

        carol = await orchestrator.get_pending_for_user("carol")
        bob = await orchestrator.get_pending_for_user("bob")

        assert [p["operation_id"] for p in carol] == [second.operation_id]
        assert {p["operation_id"] for p in bob} == {first.operation_id, second.operation_id}
        assert bob[0]["wallet_name"] == "Operations Treasury"
        assert await orchestrator.get_pending_for_user("viewer_vic") == []

    async def test_pending_for_user_skips_expired(self, orchestrator, wallet, clock):
        await _initiate(orchestrator)
        clock.advance(hours=25)
        assert await orchestrator.get_pending_for_user("bob") == []

    async def test_operation_summary_unknown(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.get_operation_summary("mso_missing")


class TestInactiveWallet:
    """A deactivated wallet gates nothing and accepts no new work."""

    async def _deactivate(self, orchestrator):
        wallet = await orchestrator.store.load(WORKSPACE_ID)
        wallet.is_active = False
        await orchestrator.register_wallet(wallet)

    async def test_initiate_is_refused(self, orchestrator, wallet, repository):
        await self._deactivate(orchestrator)

        requirement = await orchestrator.requires_multisig(WORKSPACE_ID, Decimal("2500"))
        assert requirement.required is False

        with pytest.raises(PolicyError, match="inactive"):
            await _initiate(orchestrator)
        stored = await orchestrator.store.load(WORKSPACE_ID)
        assert stored.operations == []
        assert await repository.get_recent_operation_ids(24) == []

    async def test_signature_is_refused(self, orchestrator, wallet, clock):
        result = await _initiate(orchestrator)
        await self._deactivate(orchestrator)

        with pytest.raises(PolicyError, match="inactive"):
            await _sign(orchestrator, clock, result.operation_id, "bob")
        operation = await _operation(orchestrator, result.operation_id)
        assert operation.status == OperationStatus.PENDING
        assert operation.signatures == []

    async def test_pending_for_user_skips_inactive_wallet(self, orchestrator, wallet):
        await _initiate(orchestrator)
        await self._deactivate(orchestrator)
        assert await orchestrator.get_pending_for_user("bob") == []
