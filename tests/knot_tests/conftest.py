"""
Test configuration and fixtures
"""
import secrets
import sys
from pathlib import Path

import pytest

# Ensure src and this directory are importable before collection runs.
project_root = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(project_root / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from knot.core.authorization import LocalAccountSigner  # noqa: E402
from knot.core.contracts.accumulator import JobAccumulator  # noqa: E402
from knot.core.contracts.host_ledger import InMemoryLedger, deploy_erc20  # noqa: E402
from knot.mobile.passkey_verifier import PasskeyRelyingParty, PasskeyVerifier  # noqa: E402

from knot_support import (  # noqa: E402
    ACCUMULATOR_ADDRESS,
    APPROVER,
    HOME_CHAIN,
    MESSENGER,
    OTHER_KEY,
    OWNER_KEY,
    REMOTE_CHAIN,
    TOKEN_ADDRESS,
    SoftwareAuthenticator,
)


# ==================== Passkey Fixtures ====================


@pytest.fixture
def relying_party():
    return PasskeyRelyingParty("knot.fi", "Knot")


@pytest.fixture
def verifier(relying_party):
    return PasskeyVerifier(relying_party)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def registration(authenticator, relying_party):
    """Raw registration response plus the challenge it answered."""
    challenge = secrets.token_bytes(32)
    response = authenticator.register(relying_party, challenge, "alice", b"user-1")
    return challenge, response


@pytest.fixture
def passkey(verifier, registration):
    challenge, response = registration
    return verifier.verify_attestation(
        response.raw_attestation_object,
        response.raw_client_data_json,
        challenge,
        credential_id=response.credential_id,
        user_name="alice",
    )


# ==================== Signer Fixtures ====================


@pytest.fixture
def signer():
    return LocalAccountSigner(OWNER_KEY)


@pytest.fixture
def other_signer():
    return LocalAccountSigner(OTHER_KEY)


# ==================== Ledger Fixtures ====================


@pytest.fixture
def home_ledger():
    return InMemoryLedger(HOME_CHAIN)


@pytest.fixture
def remote_ledger():
    return InMemoryLedger(REMOTE_CHAIN)


@pytest.fixture
def accumulator(home_ledger, remote_ledger, signer):
    """Accumulator owned by the signer's EOA with one approver."""
    return JobAccumulator(
        address=ACCUMULATOR_ADDRESS,
        owner=signer.address,
        home_chain_id=HOME_CHAIN,
        ledgers={HOME_CHAIN: home_ledger, REMOTE_CHAIN: remote_ledger},
        approvers={APPROVER},
    )


@pytest.fixture
def token(home_ledger):
    """ERC-20 on the home chain holding funds for the accumulator."""
    return deploy_erc20(
        home_ledger,
        TOKEN_ADDRESS,
        owner=MESSENGER,
        balances={ACCUMULATOR_ADDRESS: 1_000_000},
    )

