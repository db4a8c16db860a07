"""Chat backend: conversations, message ledger and notification dispatch."""
