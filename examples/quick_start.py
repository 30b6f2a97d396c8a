#!/usr/bin/env python3
"""
Quick start guide for the spend-note engine.

Run this to see a complete issue-and-claim workflow against an in-memory
ledger and store, using mock proofs.
"""

import asyncio
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from spendnote.config import configure_logging
from spendnote.core.claim_link import ClaimLinkProtocol
from spendnote.core.coordinator import SpendCoordinator
from spendnote.core.ledger import InMemoryLedger
from spendnote.core.merkle_tree import CommitmentTree
from spendnote.core.prover import ProofBroker
from spendnote.crypto.nullifier import KeyMaterial, NullifierEngine
from spendnote.security.signatures import address_from_private_key, sign_message
from spendnote.storage.database import InMemoryLeafStore

ALICE_KEY = bytes([1]) * 32
BOB_KEY = bytes([2]) * 32


async def main():
    """Run a simple example of the spend-note engine."""
    configure_logging("WARNING")

    print("=" * 70)
    print("SPEND NOTE QUICK START EXAMPLE")
    print("=" * 70)
    print()

    alice = address_from_private_key(ALICE_KEY)
    bob = address_from_private_key(BOB_KEY)
    ledger = InMemoryLedger()

    # Step 1: Wire the engine
    print("Step 1: Initialize the engine")
    print("-" * 70)
    coordinator = SpendCoordinator(
        engine=NullifierEngine(KeyMaterial.generate()),
        tree=CommitmentTree(InMemoryLeafStore()),
        broker=ProofBroker(),
        ledger=ledger,
        links=ClaimLinkProtocol(base_url="http://localhost:5173/claim"),
    )
    await coordinator.start()
    print(f"✓ Engine ready (proof backend: {coordinator.broker.backend_name})")
    print()

    # Step 2: Alice creates a claim link
    print("Step 2: Alice sends 1 ETH as a claim link")
    print("-" * 70)
    issued = await coordinator.generate_link(alice, 10**18)
    print(f"✓ Note committed at leaf {issued.receipt.leaf_index}")
    print(f"  Note Hash: {issued.receipt.note_hash}")
    print(f"  Merkle Root: {issued.receipt.merkle_root}")
    print(f"  Link: {issued.link[:80]}...")
    print()

    # Step 3: Bob inspects the link
    print("Step 3: Bob opens the link")
    print("-" * 70)
    info = await coordinator.get_note_info(issued.link)
    print(f"✓ Valid: {info.is_valid}, amount: {info.amount}, spent: {info.is_spent}")
    print()

    # Step 4: Bob signs and claims
    print("Step 4: Bob signs the claim message and claims")
    print("-" * 70)
    message = coordinator.claim_message(issued.link, bob)
    signature = sign_message(message, BOB_KEY)
    result = await coordinator.claim(issued.link, signature, bob)
    print(f"✓ {result.message}")
    print(f"  Receipt: {result.receipt_id}")
    print(f"  Bob's balance: {ledger.balances.get(bob, 0)}")
    print()

    # Step 5: Replay is rejected
    print("Step 5: Bob tries to claim again")
    print("-" * 70)
    again = await coordinator.claim(issued.link, signature, bob)
    print(f"✓ Rejected: {again.status.value}")
    print()

    print("=" * 70)
    print("QUICK START COMPLETE")
    print("=" * 70)


if __name__ == "__main__":
    asyncio.run(main())
