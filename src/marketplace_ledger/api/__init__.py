"""HTTP surface for the marketplace ledger."""
