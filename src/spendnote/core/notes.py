"""Spend notes and their canonical leaf encoding."""

from dataclasses import dataclass

from spendnote.exceptions import InvalidInputError
from spendnote.utils.encoding import bytes_to_hex, hex_to_bytes, int_to_fixed_bytes, is_hex_of_length
from spendnote.utils.hash import sha256

ADDRESS_WIDTH = 20
NULLIFIER_WIDTH = 32
AMOUNT_WIDTH = 32  # uint256
TIMESTAMP_WIDTH = 8  # uint64 milliseconds

MAX_AMOUNT = 2 ** (8 * AMOUNT_WIDTH) - 1


@dataclass(frozen=True)
class SpendNote:
    """A committed, not-yet-spent value unit."""

    wallet_address: str
    nullifier: str
    amount: int
    timestamp: int

    def __post_init__(self):
        if not is_hex_of_length(self.wallet_address, ADDRESS_WIDTH):
            raise InvalidInputError(f"Invalid wallet address: {self.wallet_address!r}")
        if not is_hex_of_length(self.nullifier, NULLIFIER_WIDTH):
            raise InvalidInputError(f"Invalid nullifier: {self.nullifier!r}")
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise InvalidInputError("Amount must be an integer")
        if not 0 <= self.amount <= MAX_AMOUNT:
            raise InvalidInputError("Amount must be a non-negative uint256")
        if not 0 <= self.timestamp < 2 ** (8 * TIMESTAMP_WIDTH):
            raise InvalidInputError("Timestamp out of range")

    def encode(self) -> bytes:
        """
        Canonical leaf preimage shared with the ledger.

        wallet[20] || nullifier[32] || amount[32, big-endian] || timestamp[8, big-endian]
        """
        return (
            hex_to_bytes(self.wallet_address)
            + hex_to_bytes(self.nullifier)
            + int_to_fixed_bytes(self.amount, AMOUNT_WIDTH)
            + int_to_fixed_bytes(self.timestamp, TIMESTAMP_WIDTH)
        )

    def leaf_hash(self) -> bytes:
        """SHA-256 of the canonical encoding."""
        return sha256(self.encode())

    def to_dict(self) -> dict:
        return {
            "walletAddress": self.wallet_address,
            "nullifier": self.nullifier,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class MerkleLeaf:
    """A spend note with its leaf digest ('0x' hex)."""

    hash: str
    spend_note: SpendNote

    @classmethod
    def from_note(cls, spend_note: SpendNote) -> "MerkleLeaf":
        return cls(hash=bytes_to_hex(spend_note.leaf_hash()), spend_note=spend_note)

    def is_consistent(self) -> bool:
        """Check that the stored hash matches the note's encoding."""
        return self.hash.lower() == bytes_to_hex(self.spend_note.leaf_hash())
