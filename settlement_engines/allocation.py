"""
Module: settlement_engines.allocation
Responsibility:
    Split a fixed amount of money across weighted claimants so that the
    parts sum to the whole exactly, at minor-unit (cent) granularity, with
    a reproducible answer to "who got the rounding cent".

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Algorithm (largest remainder):
    1. total -> integer minor units.  Zero total weight is rejected.
    2. Each claimant's exact share (a rational) is floored; the fractional
       remainder is kept.
    3. leftover = total_units - sum(floors), a non-negative integer smaller
       than the number of claimants.
    4. Claimants are ranked by descending remainder, ties by holder id, and
       the first ``leftover`` of them get one extra minor unit.
    5. Units are converted back to Decimal.

    Exact rational arithmetic (fractions.Fraction) is used for the shares so
    that remainders compare exactly; nothing passes through float.

Invariants enforced:
    - sum(line.amount) == total, always.
    - Zero-weight claimants never appear in a pro-rata result.
    - Fixed-percentage splits require percentages summing to exactly 100.

Failure modes:
    - NoEligibleHoldersError when the total weight is zero.
    - InvalidValueError on negative weights, duplicate holders, a negative
      total, or a total with sub-minor-unit precision.
    - SplitPercentageError when split percentages do not sum to 100.

Usage:
    from settlement_engines.allocation import AllocationCalculator, Claim

    calc = AllocationCalculator()
    result = calc.allocate_pro_rata(
        total=Decimal("1000.01"),
        claims=[Claim("a", Decimal("1")), Claim("b", Decimal("2"))],
    )
    # a -> 333.34, b -> 666.67
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from fractions import Fraction
from typing import Hashable

from settlement_engines.tracer import traced_engine
from settlement_kernel.db.types import (
    MONEY_DECIMAL_PLACES,
    PERCENT_DECIMAL_PLACES,
    money_from_int,
    round_money,
)
from settlement_kernel.exceptions import (
    InvalidValueError,
    NoEligibleHoldersError,
    SplitPercentageError,
)
from settlement_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

HUNDRED = Decimal("100")


class AllocationMethod(str, Enum):
    PRO_RATA = "pro_rata"
    EQUAL = "equal"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class Claim:
    """A claimant and its non-negative weight (tokens held, contribution, percent)."""

    holder_id: Hashable
    weight: Decimal


@dataclass(frozen=True)
class AllocationLine:
    holder_id: Hashable
    weight: Decimal
    amount: Decimal
    ownership_percentage: Decimal
    received_remainder_unit: bool


@dataclass(frozen=True)
class AllocationResult:
    method: AllocationMethod
    total: Decimal
    total_weight: Decimal
    lines: tuple[AllocationLine, ...]
    leftover_units: int

    @property
    def allocated_total(self) -> Decimal:
        return sum((line.amount for line in self.lines), Decimal("0"))

    def amount_for(self, holder_id: Hashable) -> Decimal:
        for line in self.lines:
            if line.holder_id == holder_id:
                return line.amount
        raise KeyError(holder_id)

    def as_mapping(self) -> dict[Hashable, Decimal]:
        return {line.holder_id: line.amount for line in self.lines}


def _total_units(total: Decimal, decimal_places: int) -> int:
    if total < 0:
        raise InvalidValueError("total", total, "must not be negative")
    rounded = round_money(total, decimal_places)
    if rounded != total:
        raise InvalidValueError(
            "total", total, f"has more than {decimal_places} fractional digits"
        )
    return int(rounded.scaleb(decimal_places))


def _validate_claims(claims: Sequence[Claim]) -> None:
    seen: set = set()
    for claim in claims:
        if claim.weight < 0:
            raise InvalidValueError(
                f"weight[{claim.holder_id}]", claim.weight, "must not be negative"
            )
        if claim.holder_id in seen:
            raise InvalidValueError("holder_id", claim.holder_id, "appears twice")
        seen.add(claim.holder_id)


def _largest_remainder(
    total_units: int,
    claims: Sequence[Claim],
) -> tuple[dict[Hashable, int], set[Hashable], int]:
    """Return (units per holder, holders that got a leftover unit, leftover)."""
    total_weight = sum((Fraction(c.weight) for c in claims), Fraction(0))

    floors: dict[Hashable, int] = {}
    remainders: list[tuple[Fraction, str, Hashable]] = []
    for claim in claims:
        exact = Fraction(total_units) * Fraction(claim.weight) / total_weight
        floor = exact.numerator // exact.denominator
        floors[claim.holder_id] = floor
        remainders.append((exact - floor, str(claim.holder_id), claim.holder_id))

    leftover = total_units - sum(floors.values())

    remainders.sort(key=lambda r: (-r[0], r[1]))
    bumped = {holder_id for _, _, holder_id in remainders[:leftover]}
    for holder_id in bumped:
        floors[holder_id] += 1

    return floors, bumped, leftover


class AllocationCalculator:
    """
    Deterministic allocation of money across claimants.

    All methods are pure: identical inputs always give identical lines in
    identical order (sorted by holder id).
    """

    @traced_engine("allocation", "1.0", fingerprint_fields=("total", "claims"))
    def allocate_pro_rata(
        self,
        *,
        total: Decimal,
        claims: Sequence[Claim],
        decimal_places: int = MONEY_DECIMAL_PLACES,
    ) -> AllocationResult:
        """Weight-proportional allocation.  Zero-weight claimants are dropped."""
        _validate_claims(claims)
        units = _total_units(total, decimal_places)

        eligible = [c for c in claims if c.weight > 0]
        total_weight = sum((c.weight for c in eligible), Decimal("0"))
        if total_weight == 0:
            raise NoEligibleHoldersError()

        logger.info(
            "allocation_started",
            extra={
                "method": AllocationMethod.PRO_RATA.value,
                "total": str(total),
                "claimant_count": len(eligible),
                "excluded_zero_weight": len(claims) - len(eligible),
            },
        )
        return self._build(
            AllocationMethod.PRO_RATA, total, total_weight, units, eligible, decimal_places,
        )

    @traced_engine("allocation", "1.0", fingerprint_fields=("total", "holder_ids"))
    def allocate_equal(
        self,
        *,
        total: Decimal,
        holder_ids: Sequence[Hashable],
        decimal_places: int = MONEY_DECIMAL_PLACES,
    ) -> AllocationResult:
        """Even split; leftover units go to the lowest holder ids."""
        claims = [Claim(holder_id, Decimal("1")) for holder_id in holder_ids]
        _validate_claims(claims)
        units = _total_units(total, decimal_places)
        if not claims:
            raise NoEligibleHoldersError()

        return self._build(
            AllocationMethod.EQUAL,
            total,
            Decimal(len(claims)),
            units,
            claims,
            decimal_places,
        )

    @traced_engine("allocation", "1.0", fingerprint_fields=("total", "percentages"))
    def split_by_percentages(
        self,
        *,
        total: Decimal,
        percentages: Mapping[Hashable, Decimal],
        decimal_places: int = MONEY_DECIMAL_PLACES,
    ) -> AllocationResult:
        """
        Fixed-percentage split (e.g. the four-way revenue split).

        Percentages must sum to exactly 100; a mismatch is a hard failure
        and is never renormalized.  Destinations at 0% are kept with a zero
        amount so every configured bucket appears in the result.
        """
        percent_sum = sum(percentages.values(), Decimal("0"))
        if percent_sum != HUNDRED:
            raise SplitPercentageError(percent_sum)

        claims = [Claim(key, pct) for key, pct in percentages.items()]
        _validate_claims(claims)
        units = _total_units(total, decimal_places)

        positive = [c for c in claims if c.weight > 0]
        result = self._build(
            AllocationMethod.PERCENTAGE, total, HUNDRED, units, positive, decimal_places,
        )
        zero_lines = tuple(
            AllocationLine(
                holder_id=c.holder_id,
                weight=c.weight,
                amount=money_from_int(0, decimal_places),
                ownership_percentage=Decimal("0"),
                received_remainder_unit=False,
            )
            for c in claims
            if c.weight == 0
        )
        if not zero_lines:
            return result
        return AllocationResult(
            method=result.method,
            total=result.total,
            total_weight=result.total_weight,
            lines=tuple(
                sorted(result.lines + zero_lines, key=lambda line: str(line.holder_id))
            ),
            leftover_units=result.leftover_units,
        )

    def _build(
        self,
        method: AllocationMethod,
        total: Decimal,
        total_weight: Decimal,
        units: int,
        claims: Sequence[Claim],
        decimal_places: int,
    ) -> AllocationResult:
        per_holder, bumped, leftover = _largest_remainder(units, claims)

        lines = tuple(
            AllocationLine(
                holder_id=c.holder_id,
                weight=c.weight,
                amount=money_from_int(per_holder[c.holder_id], decimal_places),
                ownership_percentage=round_money(
                    c.weight / total_weight * HUNDRED, PERCENT_DECIMAL_PLACES,
                ),
                received_remainder_unit=c.holder_id in bumped,
            )
            for c in sorted(claims, key=lambda c: str(c.holder_id))
        )

        logger.debug(
            "allocation_completed",
            extra={
                "method": method.value,
                "total": str(total),
                "lines": len(lines),
                "leftover_units": leftover,
            },
        )
        return AllocationResult(
            method=method,
            total=money_from_int(units, decimal_places),
            total_weight=total_weight,
            lines=lines,
            leftover_units=leftover,
        )
