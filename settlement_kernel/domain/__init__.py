"""Pure domain types for the settlement kernel (no I/O)."""
