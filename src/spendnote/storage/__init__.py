"""Storage layer for persistent data."""

from spendnote.storage.database import (
    Base,
    InMemoryLeafStore,
    LeafStore,
    MerkleRootRecord,
    SpendNoteRecord,
    SQLLeafStore,
)

__all__ = [
    "Base",
    "InMemoryLeafStore",
    "LeafStore",
    "MerkleRootRecord",
    "SpendNoteRecord",
    "SQLLeafStore",
]
