"""Pytest configuration and fixtures."""

import pytest
import sys
import textwrap
from collections import namedtuple
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from spendnote.core.claim_link import ClaimLinkProtocol
from spendnote.core.coordinator import SpendCoordinator
from spendnote.core.ledger import InMemoryLedger
from spendnote.core.merkle_tree import CommitmentTree
from spendnote.core.prover import ProofBroker
from spendnote.crypto.nullifier import KeyMaterial, NullifierEngine
from spendnote.security.signatures import address_from_private_key
from spendnote.storage.database import InMemoryLeafStore

Wallet = namedtuple("Wallet", ["private_key", "address"])

CLAIM_BASE_URL = "https://claim.example/claim"


def make_wallet(seed: int) -> Wallet:
    """Deterministic test wallet."""
    private_key = bytes([seed]) * 32
    return Wallet(private_key=private_key, address=address_from_private_key(private_key))


def write_prover(directory: Path, body: str, name: str = "prover.py") -> list:
    """Write a Python prover script and return the command that runs it."""
    script = directory / name
    script.write_text(textwrap.dedent(body))
    return [sys.executable, str(script)]


ECHO_PROVER = """
    import json
    import sys

    request = json.load(sys.stdin)
    if sys.argv[1] == "prove":
        print(json.dumps({
            "receipt": "ab" * 64,
            "merkle_root": request["merkle_root"],
            "nullifier": "cd" * 32,
            "amount": request["amount"],
        }))
    else:
        sys.exit(0 if request["receipt"] == "ab" * 64 else 1)
"""


@pytest.fixture
def temp_db(tmp_path):
    """Fixture providing a temporary SQLite database URL."""
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def key_material():
    return KeyMaterial.generate()


@pytest.fixture
def engine(key_material):
    """Nullifier engine with a fresh key."""
    return NullifierEngine(key_material)


@pytest.fixture
def store():
    return InMemoryLeafStore()


@pytest.fixture
def tree(store):
    """Uninitialized commitment tree over an in-memory store."""
    return CommitmentTree(store)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def broker():
    """Mock proof broker."""
    return ProofBroker()


@pytest.fixture
def links():
    return ClaimLinkProtocol(base_url=CLAIM_BASE_URL)


@pytest.fixture
def coordinator(engine, tree, broker, ledger, links):
    """Coordinator wired to in-memory collaborators (call ``start`` before use)."""
    return SpendCoordinator(
        engine=engine,
        tree=tree,
        broker=broker,
        ledger=ledger,
        links=links,
        default_amount=10**18,
    )


@pytest.fixture
def alice():
    return make_wallet(1)


@pytest.fixture
def bob():
    return make_wallet(2)


@pytest.fixture
def carol():
    return make_wallet(3)


@pytest.fixture
def make_prover(tmp_path):
    """Factory writing prover scripts into the test directory."""
    def factory(body: str, name: str = "prover.py") -> list:
        return write_prover(tmp_path, body, name)
    return factory


@pytest.fixture
def echo_prover(tmp_path):
    """Command for a prover that echoes its inputs back as a proof."""
    return write_prover(tmp_path, ECHO_PROVER)
