"""Main package initialization."""

__version__ = "0.1.0"
__author__ = "Spend Note Team"
__description__ = "Private spend notes with Merkle commitments and shareable claim links"

from .core.notes import SpendNote, MerkleLeaf
from .core.merkle_tree import CommitmentTree
from .core.prover import ProofBroker, SpendProof
from .core.ledger import LedgerClient, InMemoryLedger
from .core.claim_link import ClaimLinkProtocol
from .core.coordinator import SpendCoordinator, IssueReceipt, ClaimResult
from .crypto.nullifier import KeyMaterial, NullifierEngine

__all__ = [
    "SpendNote",
    "MerkleLeaf",
    "CommitmentTree",
    "ProofBroker",
    "SpendProof",
    "LedgerClient",
    "InMemoryLedger",
    "ClaimLinkProtocol",
    "SpendCoordinator",
    "IssueReceipt",
    "ClaimResult",
    "KeyMaterial",
    "NullifierEngine",
]
