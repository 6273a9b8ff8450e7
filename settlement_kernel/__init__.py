"""
Settlement Kernel

The durable core of the tokenized-asset settlement platform:
- Versioned NAV ledger with a single active record per project
- Append-only capital pool ledger (balances are derived sums)
- Hash-chained audit trail
- Reconciliation records for local/external divergence
- Asset network client contract
"""

__version__ = "0.1.0"
