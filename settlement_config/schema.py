"""
SettlementConfig schema.

Frozen dataclasses the YAML configuration is parsed into.  The loader
builds them, the validator checks them, and ``get_active_config()`` hands
the validated ``SettlementConfig`` to callers.  Nothing here reads files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from settlement_kernel.domain.types import (
    FundingSource,
    LiquidityProviderSplit,
    RevenueDestination,
)


@dataclass(frozen=True)
class NetworkConfig:
    """Asset network parameters."""

    asset_code: str
    issuer: str
    starting_reserve: Decimal
    call_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RevenueSplit:
    """Percentages of each revenue record routed to each destination."""

    token_holders: Decimal
    liquidity_pool: Decimal
    treasury: Decimal
    project_reinvestment: Decimal

    @property
    def total(self) -> Decimal:
        return sum(self.as_percentages().values(), Decimal("0"))

    def as_percentages(self) -> dict[RevenueDestination, Decimal]:
        return {
            RevenueDestination.TOKEN_HOLDERS: self.token_holders,
            RevenueDestination.LIQUIDITY_POOL: self.liquidity_pool,
            RevenueDestination.TREASURY: self.treasury,
            RevenueDestination.PROJECT_REINVESTMENT: self.project_reinvestment,
        }


@dataclass(frozen=True)
class PoolSeed:
    """Reference data for one capital pool."""

    pool_type: str
    wallet_address: str
    min_reserve: Decimal = Decimal("0")


@dataclass(frozen=True)
class CapitalAllocationConfig:
    # Fraction of a pool's balance above which an allocation is logged as large.
    large_allocation_ratio: Decimal = Decimal("0.5")


@dataclass(frozen=True)
class AuditQueueConfig:
    max_attempts: int = 5
    initial_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0
    queue_size: int = 10000


@dataclass(frozen=True)
class RegenerationConfig:
    batch_size: int = 100
    interval_seconds: float = 3600.0


@dataclass(frozen=True)
class SettlementConfig:
    """
    Complete runtime configuration.

    ``checksum`` is the SHA-256 of the canonical source document and
    identifies the exact configuration a run used.
    """

    config_id: str
    version: int
    network: NetworkConfig
    revenue_split: RevenueSplit
    liquidity_provider_split: LiquidityProviderSplit
    funding_priority: tuple[FundingSource, ...]
    pools: tuple[PoolSeed, ...]
    capital_allocation: CapitalAllocationConfig = field(default_factory=CapitalAllocationConfig)
    audit_queue: AuditQueueConfig = field(default_factory=AuditQueueConfig)
    regeneration: RegenerationConfig = field(default_factory=RegenerationConfig)
    checksum: str = ""

    def pool(self, pool_type: str) -> PoolSeed:
        for seed in self.pools:
            if seed.pool_type == pool_type:
                return seed
        raise KeyError(pool_type)
