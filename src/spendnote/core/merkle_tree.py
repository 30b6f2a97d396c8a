"""Append-only Merkle commitment tree over spend-note leaves.

Tree Structure:
    - Leaves: SHA-256 of the canonical spend-note encoding, in arrival order
    - Internal nodes: SHA-256(min(a, b) || max(a, b)) over the two children
    - Unpaired last node of a level: promoted to the next level unchanged
    - Single leaf: the root is the leaf itself
    - Empty tree: the root is 32 zero bytes

Because pairs are sorted before hashing, an inclusion proof is just the
ordered list of sibling digests; the verifier never needs left/right flags.
The same convention is used by the ledger when it re-checks a proof against
its stored root.

Example:
    Appending a note and proving its inclusion::

        tree = CommitmentTree(InMemoryLeafStore())
        await tree.initialize()
        leaf_hash = await tree.add_spend_note(note)
        proof = tree.get_proof(leaf_hash)
        assert tree.verify_leaf(leaf_hash, proof)
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

from spendnote.core.notes import MerkleLeaf, SpendNote
from spendnote.exceptions import (
    DuplicateLeafError,
    LeafNotFoundError,
    StorageError,
)
from spendnote.storage.database import LeafStore
from spendnote.utils.encoding import bytes_to_hex, hex_to_bytes
from spendnote.utils.hash import sorted_pair_hash

logger = logging.getLogger(__name__)

EMPTY_ROOT = b"\x00" * 32


def build_layers(leaves: Sequence[bytes]) -> List[List[bytes]]:
    """
    Build every level of the tree from its leaves.

    Returns:
        List of levels, ``[leaves, ..., [root]]``; empty for no leaves.
    """
    if not leaves:
        return []

    layers = [list(leaves)]
    while len(layers[-1]) > 1:
        current = layers[-1]
        parents = []
        for i in range(0, len(current), 2):
            if i + 1 < len(current):
                parents.append(sorted_pair_hash(current[i], current[i + 1]))
            else:
                parents.append(current[i])
        layers.append(parents)
    return layers


def process_proof(leaf: bytes, proof: Sequence[bytes]) -> bytes:
    """Fold a leaf with its sibling path into a root."""
    current = leaf
    for sibling in proof:
        current = sorted_pair_hash(current, sibling)
    return current


def verify_merkle_proof(leaf: bytes, proof: Sequence[bytes], root: bytes) -> bool:
    """
    Standalone verification of a sorted-pair inclusion proof.

    Returns:
        bool: True if the leaf and proof fold to ``root``. Never raises.
    """
    try:
        return process_proof(leaf, proof) == root
    except (ValueError, TypeError):
        return False


class CommitmentTree:
    """
    Merkle tree of spend notes backed by a ``LeafStore``.

    Writes are serialized: assigning the next leaf index and persisting the
    leaf happen under one lock, and a write that has started always runs to
    completion even if the caller is cancelled.
    """

    def __init__(self, store: LeafStore):
        self._store = store
        self._leaves: List[MerkleLeaf] = []
        self._layers: List[List[bytes]] = []
        self._index: Dict[str, int] = {}
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Load every persisted leaf and rebuild the tree.

        Raises:
            StorageUnavailableError: If the store cannot be reached
            StorageError: If a stored leaf hash disagrees with its note
        """
        leaves = await asyncio.to_thread(self._store.load_all_leaves)

        index: Dict[str, int] = {}
        for position, leaf in enumerate(leaves):
            if not leaf.is_consistent():
                raise StorageError(
                    f"Stored leaf {position} hash {leaf.hash} does not match its note"
                )
            index[leaf.hash.lower()] = position

        self._leaves = list(leaves)
        self._index = index
        self._layers = build_layers([hex_to_bytes(leaf.hash) for leaf in leaves])
        self._initialized = True

        logger.info("Commitment tree rebuilt from %d leaves, root %s", len(leaves), self.get_root())

    async def add_spend_note(self, spend_note: SpendNote) -> str:
        """
        Append a spend note and persist it together with the new root.

        Returns:
            str: The canonical leaf hash ('0x' hex)

        Raises:
            DuplicateLeafError: If the note is already in the tree
            StorageUnavailableError: If persistence fails (tree is unchanged)
        """
        return await asyncio.shield(self._append(MerkleLeaf.from_note(spend_note)))

    async def _append(self, leaf: MerkleLeaf) -> str:
        async with self._write_lock:
            key = leaf.hash.lower()
            if key in self._index:
                raise DuplicateLeafError(f"Leaf already in tree: {leaf.hash}")

            leaf_index = len(self._leaves)
            updates = self._plan_append(hex_to_bytes(leaf.hash))
            new_root = bytes_to_hex(updates[-1][2])

            await asyncio.to_thread(
                self._store.append_leaf_with_root,
                leaf, leaf_index, new_root, int(time.time() * 1000),
            )

            self._apply(updates)
            self._leaves.append(leaf)
            self._index[key] = leaf_index

            logger.debug("Leaf %d appended, root %s", leaf_index, new_root)
            return leaf.hash

    def _plan_append(self, leaf: bytes) -> List[Tuple[int, int, bytes]]:
        """Compute the (level, position, digest) writes for appending ``leaf``."""
        position = len(self._leaves)
        width = position + 1
        level = 0
        node = leaf
        updates = [(0, position, leaf)]

        while width > 1:
            if position % 2 == 1:
                node = sorted_pair_hash(self._layers[level][position - 1], node)
            position //= 2
            width = (width + 1) // 2
            level += 1
            updates.append((level, position, node))

        return updates

    def _apply(self, updates: List[Tuple[int, int, bytes]]) -> None:
        for level, position, digest in updates:
            if level == len(self._layers):
                self._layers.append([])
            nodes = self._layers[level]
            if position < len(nodes):
                nodes[position] = digest
            else:
                nodes.append(digest)

    def get_proof(self, leaf_hash: str) -> List[str]:
        """
        Return the sibling path for a leaf, bottom to top.

        Raises:
            LeafNotFoundError: If the leaf is not in the tree
        """
        return [bytes_to_hex(sibling) for sibling, _ in self._path(leaf_hash)]

    def get_proof_with_indices(self, leaf_hash: str) -> Tuple[List[str], List[bool]]:
        """
        Return the sibling path plus, per level, whether the node is a right child.

        Raises:
            LeafNotFoundError: If the leaf is not in the tree
        """
        path = self._path(leaf_hash)
        return [bytes_to_hex(s) for s, _ in path], [is_right for _, is_right in path]

    def _path(self, leaf_hash: str) -> List[Tuple[bytes, bool]]:
        if not isinstance(leaf_hash, str) or leaf_hash.lower() not in self._index:
            raise LeafNotFoundError(f"Leaf not found: {leaf_hash}")

        position = self._index[leaf_hash.lower()]
        path = []
        for nodes in self._layers[:-1]:
            sibling = position ^ 1
            if sibling < len(nodes):
                path.append((nodes[sibling], position % 2 == 1))
            position //= 2
        return path

    def verify_leaf(self, leaf_hash: str, proof: Sequence[str]) -> bool:
        """
        Check a proof for a known leaf against the current root.

        Returns:
            bool: False for unknown leaves or any mismatch. Never raises.
        """
        try:
            if leaf_hash.lower() not in self._index:
                return False
            siblings = [hex_to_bytes(p) for p in proof]
            return verify_merkle_proof(hex_to_bytes(leaf_hash), siblings, self.root)
        except (ValueError, TypeError, AttributeError):
            return False

    @property
    def root(self) -> bytes:
        """Get the current Merkle root."""
        if not self._layers:
            return EMPTY_ROOT
        return self._layers[-1][0]

    def get_root(self) -> str:
        """Get the current Merkle root as '0x' hex."""
        return bytes_to_hex(self.root)

    def get_leaf(self, leaf_hash: str) -> Optional[MerkleLeaf]:
        position = self._index.get(leaf_hash.lower()) if isinstance(leaf_hash, str) else None
        return self._leaves[position] if position is not None else None

    def index_of(self, leaf_hash: str) -> int:
        """
        Raises:
            LeafNotFoundError: If the leaf is not in the tree
        """
        try:
            return self._index[leaf_hash.lower()]
        except (KeyError, AttributeError):
            raise LeafNotFoundError(f"Leaf not found: {leaf_hash}")

    @property
    def leaves(self) -> List[MerkleLeaf]:
        return list(self._leaves)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def get_state(self) -> dict:
        """
        Get the current state of the tree for serialization.

        Returns:
            dict: Leaf hashes, count and root
        """
        return {
            "num_leaves": len(self._leaves),
            "leaves": [leaf.hash for leaf in self._leaves],
            "root": self.get_root(),
        }

    def __len__(self) -> int:
        return len(self._leaves)

    def __repr__(self) -> str:
        return f"CommitmentTree(leaves={len(self._leaves)}, root={self.get_root()[:18]}...)"
