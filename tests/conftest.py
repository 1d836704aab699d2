import random

import pytest

from multisig_consensus import (
    ConsensusReconciler,
    ConsensusSettings,
    EventOutbox,
    InMemoryApprovalRepository,
    InMemoryCredentialStore,
    InMemoryWalletStore,
    MultiSigOrchestrator,
    ProofVerifier,
)

from consensus_helpers import SIGNER_IDS, FrozenClock, make_wallet, password_digest


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    """Defaults only; never read a developer's .env."""
    return ConsensusSettings(_env_file=None)


@pytest.fixture
def credentials():
    store = InMemoryCredentialStore()
    for user_id in SIGNER_IDS:
        store.register_password(user_id, password_digest(user_id))
    return store


@pytest.fixture
def verifier(clock, credentials, settings):
    return ProofVerifier(
        credentials=credentials,
        settings=settings.proofs,
        clock=clock.timestamp,
    )


@pytest.fixture
def wallet_store():
    return InMemoryWalletStore()


@pytest.fixture
def repository(clock):
    return InMemoryApprovalRepository(clock=clock)


@pytest.fixture
def outbox(clock):
    return EventOutbox(clock=clock)


@pytest.fixture
def orchestrator(wallet_store, repository, verifier, outbox, settings, clock):
    return MultiSigOrchestrator(
        wallet_store=wallet_store,
        repository=repository,
        verifier=verifier,
        outbox=outbox,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
async def wallet(orchestrator):
    return await orchestrator.register_wallet(make_wallet())


@pytest.fixture
def reconciler(orchestrator):
    return ConsensusReconciler(orchestrator, rng=random.Random(7))
