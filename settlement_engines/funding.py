"""
Module: settlement_engines.funding
Responsibility:
    Choose which capital pool pays a redemption.

Architecture position:
    Engines -- pure calculation layer.  The service layer supplies the
    candidates (balances from the pool ledger, reserve floors from pool
    reference rows) in configured priority order.

Rule:
    available = balance - reserve_floor.  The first candidate, in order,
    with available >= required wins.  No candidate qualifying is a definite
    InsufficientFundsError; one payout is never split across pools.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from settlement_engines.tracer import traced_engine
from settlement_kernel.domain.types import FundingSource
from settlement_kernel.exceptions import InsufficientFundsError, InvalidValueError


@dataclass(frozen=True)
class FundingCandidate:
    source: FundingSource
    balance: Decimal
    reserve_floor: Decimal = Decimal("0")

    @property
    def available(self) -> Decimal:
        return self.balance - self.reserve_floor

    def describe(self, required: Decimal) -> dict:
        return {
            "source": self.source.value,
            "balance": str(self.balance),
            "reserve_floor": str(self.reserve_floor),
            "available": str(self.available),
            "sufficient": self.available >= required,
        }


@dataclass(frozen=True)
class FundingDecision:
    source: FundingSource
    required: Decimal
    available: Decimal
    breakdown: tuple[dict, ...]


@traced_engine("funding", "1.0", fingerprint_fields=("required", "candidates"))
def select_funding_source(
    *,
    required: Decimal,
    candidates: Sequence[FundingCandidate],
) -> FundingDecision:
    if required <= 0:
        raise InvalidValueError("required", required, "must be positive")

    breakdown = tuple(c.describe(required) for c in candidates)
    for candidate in candidates:
        if candidate.available >= required:
            return FundingDecision(
                source=candidate.source,
                required=required,
                available=candidate.available,
                breakdown=breakdown,
            )

    raise InsufficientFundsError(required, list(breakdown))
