"""Custom exceptions for the spend-note engine."""


class SpendNoteError(Exception):
    """Base exception for all spend-note engine errors."""
    pass


# Cryptography Errors
class CryptoError(SpendNoteError):
    """Base exception for cryptographic errors."""
    pass


class InvalidInputError(CryptoError):
    """Raised when a wallet address, digest or amount is malformed."""
    pass


class EncryptionError(CryptoError):
    """Raised when nullifier encryption fails."""
    pass


class InvalidSignatureError(CryptoError):
    """Raised when a claim signature does not recover to the claimant."""
    pass


# Merkle Tree Errors
class MerkleTreeError(SpendNoteError):
    """Base exception for Merkle tree errors."""
    pass


class LeafNotFoundError(MerkleTreeError):
    """Raised when a proof is requested for an unknown leaf."""
    pass


class DuplicateLeafError(MerkleTreeError):
    """Raised when a leaf hash is already present in the tree."""
    pass


# Proof Errors
class ProofError(SpendNoteError):
    """Base exception for proof-related errors."""
    pass


class ProofGenerationError(ProofError):
    """Raised when the external prover fails or returns malformed output."""
    pass


class ProofGenerationTimeout(ProofGenerationError):
    """Raised when the external prover exceeds its time budget."""
    pass


class ProofBackendUnavailableError(ProofError):
    """Raised when the requested proof backend cannot be used."""
    pass


class AmountOverflowError(ProofError):
    """Raised when an amount cannot cross the prover boundary exactly."""
    pass


# Storage Errors
class StorageError(SpendNoteError):
    """Base exception for storage errors."""
    pass


class StorageUnavailableError(StorageError):
    """Raised when the leaf store cannot be reached."""
    pass


# Ledger Errors
class LedgerError(SpendNoteError):
    """Base exception for ledger errors."""
    pass


class LedgerUnavailableError(LedgerError):
    """Raised when the ledger cannot be reached. Callers may retry."""
    pass


class AlreadyRegisteredError(LedgerError):
    """Raised when the ledger reports a note or nullifier as already recorded."""
    pass


# Claim Errors
class ClaimError(SpendNoteError):
    """Base exception for claim-flow outcomes."""
    pass


class InvalidLinkError(ClaimError):
    """Base exception for claim links that cannot be redeemed."""
    pass


class MalformedError(InvalidLinkError):
    """Raised when a claim link cannot be decoded or misses required fields."""
    pass


class ExpiredError(InvalidLinkError):
    """Raised when a claim link is past its expiry."""
    pass


class AlreadySpentError(ClaimError):
    """Raised when the note behind a claim link was already claimed."""
    pass


# Flow Errors
class IssueError(SpendNoteError):
    """
    Raised when the issue flow aborts.

    ``step`` names the failing step; ``retryable`` is True when the cause was
    a transient ledger outage.
    """

    def __init__(self, step: str, message: str, retryable: bool = False):
        super().__init__(f"{step}: {message}")
        self.step = step
        self.retryable = retryable
