"""Financial ledger and reconciliation engine for the photo marketplace."""

__version__ = "0.1.0"
