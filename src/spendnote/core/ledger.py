"""Ledger collaborator interface and an in-process reference ledger.

The ledger holds the canonical Merkle root and the set of spent nullifiers,
and moves value when a note is spent. The engine talks to it only through
``LedgerClient``; retries, if any, belong to the client implementation.
"""

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set

from spendnote.core.merkle_tree import EMPTY_ROOT, verify_merkle_proof
from spendnote.exceptions import AlreadyRegisteredError, LedgerError, LedgerUnavailableError
from spendnote.utils.encoding import bytes_to_hex, hex_to_bytes, is_hex_of_length

logger = logging.getLogger(__name__)


@dataclass
class LedgerNote:
    """A spend note as recorded on the ledger."""

    note_hash: str
    amount: int
    spent: bool
    timestamp: int

    def to_dict(self) -> dict:
        return {
            "note_hash": self.note_hash,
            "amount": str(self.amount),
            "spent": self.spent,
            "timestamp": self.timestamp,
        }


class LedgerClient(ABC):
    """
    Remote ledger operations used by the engine.

    Every call may raise ``LedgerUnavailableError``. An "already registered"
    or "already spent" rejection is reported as ``AlreadyRegisteredError``.
    """

    @abstractmethod
    async def get_root(self) -> str:
        """Canonical root stored on the ledger ('0x' hex)."""

    @abstractmethod
    async def update_root(self, new_root: str) -> str:
        """Replace the canonical root. Returns a receipt id."""

    @abstractmethod
    async def is_nullifier_spent(self, nullifier: str) -> bool:
        """Whether ``nullifier`` has been used."""

    @abstractmethod
    async def submit_spend_note_creation(self, note_hash: str, value: int) -> str:
        """Register a new note carrying ``value``. Returns a receipt id."""

    @abstractmethod
    async def submit_spend(self, note_hash: str, nullifier: str, recipient: str,
                           merkle_proof: Sequence[str]) -> str:
        """Spend a note to ``recipient``. Returns a receipt id."""

    @abstractmethod
    async def get_spend_note(self, note_hash: str) -> Optional[LedgerNote]:
        """Look up a registered note."""


class InMemoryLedger(LedgerClient):
    """
    Reference ledger kept in process memory.

    Mirrors the on-chain contract: notes are registered once, spending
    re-checks the sorted-pair inclusion proof against the stored root and
    records the nullifier, and balances move to the recipient.
    """

    def __init__(self, latency: float = 0.0):
        self.root: str = bytes_to_hex(EMPTY_ROOT)
        self.notes: Dict[str, LedgerNote] = {}
        self.spent_nullifiers: Set[str] = set()
        self.balances: Dict[str, int] = {}
        self.receipts: List[dict] = []
        self.available = True
        self.latency = latency
        self._lock = asyncio.Lock()

    async def _enter(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.available:
            raise LedgerUnavailableError("Ledger is unreachable")

    def _receipt(self, kind: str, **details) -> str:
        receipt_id = bytes_to_hex(os.urandom(32))
        self.receipts.append({"id": receipt_id, "kind": kind, **details})
        return receipt_id

    async def get_root(self) -> str:
        await self._enter()
        return self.root

    async def update_root(self, new_root: str) -> str:
        await self._enter()
        if not is_hex_of_length(new_root, 32):
            raise LedgerError(f"Invalid root: {new_root!r}")
        async with self._lock:
            old_root, self.root = self.root, new_root.lower()
            return self._receipt("root_updated", old_root=old_root, new_root=self.root)

    async def is_nullifier_spent(self, nullifier: str) -> bool:
        await self._enter()
        return nullifier.lower() in self.spent_nullifiers

    async def submit_spend_note_creation(self, note_hash: str, value: int) -> str:
        await self._enter()
        if not is_hex_of_length(note_hash, 32):
            raise LedgerError(f"Invalid note hash: {note_hash!r}")
        async with self._lock:
            key = note_hash.lower()
            if key in self.notes:
                raise AlreadyRegisteredError(f"Note already registered: {note_hash}")
            self.notes[key] = LedgerNote(
                note_hash=key, amount=value, spent=False, timestamp=int(time.time())
            )
            return self._receipt("note_created", note_hash=key, amount=value)

    async def submit_spend(self, note_hash: str, nullifier: str, recipient: str,
                           merkle_proof: Sequence[str]) -> str:
        await self._enter()
        async with self._lock:
            key = note_hash.lower()
            note = self.notes.get(key)
            if note is None:
                raise LedgerError(f"Unknown note: {note_hash}")
            if nullifier.lower() in self.spent_nullifiers or note.spent:
                raise AlreadyRegisteredError("Nullifier already spent")

            try:
                siblings = [hex_to_bytes(p) for p in merkle_proof]
                leaf = hex_to_bytes(note_hash)
            except ValueError as e:
                raise LedgerError(f"Malformed merkle proof: {e}") from e
            if not verify_merkle_proof(leaf, siblings, hex_to_bytes(self.root)):
                raise LedgerError("Invalid merkle proof")

            self.spent_nullifiers.add(nullifier.lower())
            note.spent = True
            recipient_key = recipient.lower()
            self.balances[recipient_key] = self.balances.get(recipient_key, 0) + note.amount
            return self._receipt("note_spent", note_hash=key, nullifier=nullifier.lower(),
                                 recipient=recipient_key)

    async def get_spend_note(self, note_hash: str) -> Optional[LedgerNote]:
        await self._enter()
        return self.notes.get(note_hash.lower())
