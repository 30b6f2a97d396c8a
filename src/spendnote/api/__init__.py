"""HTTP surface for the spend-note engine (requires the ``api`` extra)."""
