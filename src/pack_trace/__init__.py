"""pack-trace custody ledger package."""
