"""
Configuration Validator (``settlement_config.validator``).

Responsibility
--------------
Semantic checks on a parsed ``SettlementConfig`` before it is handed to
any caller.

Invariants enforced
-------------------
* The revenue split sums to exactly 100 and has no negative share.
* Funding priority is non-empty and lists each source once.
* Pool types are known and unique; reserves are non-negative.
* Network starting reserve is positive and fits the network precision;
  the call timeout, audit queue and regeneration settings are positive.

Failure modes
-------------
* Errors  -> the configuration MUST NOT be used.
* Warnings  -> usable, but should be reviewed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from settlement_config.schema import SettlementConfig
from settlement_kernel.db.types import NETWORK_DECIMAL_PLACES, round_money
from settlement_kernel.models.capital_pool import PoolType

HUNDRED = Decimal("100")


@dataclass
class ConfigValidationResult:
    """``is_valid`` is True only when ``errors`` is empty."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: SettlementConfig) -> ConfigValidationResult:
    result = ConfigValidationResult()
    _validate_revenue_split(config, result)
    _validate_funding_priority(config, result)
    _validate_pools(config, result)
    _validate_runtime(config, result)
    return result


def _validate_revenue_split(config: SettlementConfig, result: ConfigValidationResult) -> None:
    for destination, pct in config.revenue_split.as_percentages().items():
        if pct < 0:
            result.add_error(f"revenue_split.{destination.value} is negative: {pct}")
    total = config.revenue_split.total
    if total != HUNDRED:
        result.add_error(f"revenue_split must sum to exactly 100, got {total}")


def _validate_funding_priority(config: SettlementConfig, result: ConfigValidationResult) -> None:
    if not config.funding_priority:
        result.add_error("funding_priority must list at least one source")
    if len(set(config.funding_priority)) != len(config.funding_priority):
        result.add_error("funding_priority lists a source more than once")


def _validate_pools(config: SettlementConfig, result: ConfigValidationResult) -> None:
    known = {p.value for p in PoolType}
    seen: set[str] = set()
    for seed in config.pools:
        if seed.pool_type not in known:
            result.add_error(f"pools: unknown pool_type '{seed.pool_type}'")
        if seed.pool_type in seen:
            result.add_error(f"pools: '{seed.pool_type}' declared more than once")
        seen.add(seed.pool_type)
        if seed.min_reserve < 0:
            result.add_error(f"pools.{seed.pool_type}.min_reserve is negative")
    missing = known - seen
    if missing:
        result.add_warning(f"pools: no seed data for {', '.join(sorted(missing))}")


def _validate_runtime(config: SettlementConfig, result: ConfigValidationResult) -> None:
    if config.network.starting_reserve <= 0:
        result.add_error("network.starting_reserve must be positive")
    elif config.network.starting_reserve != round_money(
        config.network.starting_reserve, NETWORK_DECIMAL_PLACES,
    ):
        result.add_error(
            f"network.starting_reserve has more than {NETWORK_DECIMAL_PLACES} fractional digits"
        )
    if config.network.call_timeout_seconds <= 0:
        result.add_error("network.call_timeout_seconds must be positive")
    if not config.network.asset_code or not config.network.issuer:
        result.add_error("network.asset_code and network.issuer are required")
    ratio = config.capital_allocation.large_allocation_ratio
    if not Decimal("0") < ratio <= Decimal("1"):
        result.add_error("capital_allocation.large_allocation_ratio must be in (0, 1]")
    if config.audit_queue.max_attempts < 1:
        result.add_error("audit_queue.max_attempts must be at least 1")
    if config.audit_queue.queue_size < 1:
        result.add_error("audit_queue.queue_size must be at least 1")
    if config.regeneration.batch_size < 1:
        result.add_error("regeneration.batch_size must be at least 1")
    if config.regeneration.interval_seconds <= 0:
        result.add_error("regeneration.interval_seconds must be positive")
