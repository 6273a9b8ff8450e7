"""
Module: settlement_engines
Responsibility:
    Pure calculation engines for the settlement core: largest-remainder
    allocation, NAV-derived pricing, and funding source selection.

Architecture position:
    Engines -- zero I/O.  May import settlement_kernel domain types,
    exceptions, and db/types helpers only.  MUST NOT import
    settlement_services or settlement_batch.

Invariants enforced:
    - Decimal-only arithmetic; no floats touch money.
    - Determinism: identical inputs always produce identical outputs.
"""

from settlement_engines.allocation import (
    AllocationCalculator,
    AllocationLine,
    AllocationMethod,
    AllocationResult,
    Claim,
)
from settlement_engines.funding import (
    FundingCandidate,
    FundingDecision,
    select_funding_source,
)
from settlement_engines.pricing import (
    FLOOR_TOKEN_PRICE,
    post_burn_nav,
    redemption_value,
    token_price,
)
from settlement_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "AllocationCalculator",
    "AllocationLine",
    "AllocationMethod",
    "AllocationResult",
    "Claim",
    "FundingCandidate",
    "FundingDecision",
    "select_funding_source",
    "FLOOR_TOKEN_PRICE",
    "post_burn_nav",
    "redemption_value",
    "token_price",
    "compute_input_fingerprint",
    "traced_engine",
]
