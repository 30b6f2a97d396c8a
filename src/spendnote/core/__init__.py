"""Spend notes, the commitment tree, proofs, the ledger seam and the issue/claim flows."""
