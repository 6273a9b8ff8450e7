"""
Configuration Loader (``settlement_config.loader``).

Responsibility
--------------
Reads a YAML configuration file and parses it into the frozen dataclasses
of ``settlement_config.schema``.  Runtime callers go through
``settlement_config.get_active_config()`` instead of calling this module.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unknown enum names or bad numbers  -> ``ValueError`` propagates.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from settlement_config.schema import (
    AuditQueueConfig,
    CapitalAllocationConfig,
    NetworkConfig,
    PoolSeed,
    RegenerationConfig,
    RevenueSplit,
    SettlementConfig,
)
from settlement_kernel.domain.types import FundingSource, LiquidityProviderSplit


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    """YAML numbers arrive as int or float; go through str so 0.1 stays 0.1."""
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{name}: {value!r} is not a decimal") from None


def parse_network(data: dict[str, Any]) -> NetworkConfig:
    return NetworkConfig(
        asset_code=data["asset_code"],
        issuer=data["issuer"],
        starting_reserve=parse_decimal(data["starting_reserve"], "network.starting_reserve"),
        call_timeout_seconds=float(data.get("call_timeout_seconds", 30.0)),
    )


def parse_revenue_split(data: dict[str, Any]) -> RevenueSplit:
    return RevenueSplit(
        token_holders=parse_decimal(data["token_holders"], "revenue_split.token_holders"),
        liquidity_pool=parse_decimal(data["liquidity_pool"], "revenue_split.liquidity_pool"),
        treasury=parse_decimal(data["treasury"], "revenue_split.treasury"),
        project_reinvestment=parse_decimal(
            data["project_reinvestment"], "revenue_split.project_reinvestment",
        ),
    )


def parse_pool(data: dict[str, Any]) -> PoolSeed:
    return PoolSeed(
        pool_type=data["pool_type"],
        wallet_address=data["wallet_address"],
        min_reserve=parse_decimal(data.get("min_reserve", 0), "pools.min_reserve"),
    )


def parse_config(data: dict[str, Any], checksum: str = "") -> SettlementConfig:
    """
    Parse a configuration document.

    Postconditions:
        - Returns a SettlementConfig; semantic checks (split sums, reserve
          signs) are left to the validator.
    """
    capital = data.get("capital_allocation") or {}
    audit_queue = data.get("audit_queue") or {}
    regeneration = data.get("regeneration") or {}

    return SettlementConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        network=parse_network(data["network"]),
        revenue_split=parse_revenue_split(data["revenue_split"]),
        liquidity_provider_split=LiquidityProviderSplit(
            data.get("liquidity_provider_split", LiquidityProviderSplit.EQUAL.value)
        ),
        funding_priority=tuple(FundingSource(name) for name in data["funding_priority"]),
        pools=tuple(parse_pool(p) for p in data.get("pools", [])),
        capital_allocation=CapitalAllocationConfig(
            large_allocation_ratio=parse_decimal(
                capital.get("large_allocation_ratio", "0.5"),
                "capital_allocation.large_allocation_ratio",
            ),
        ),
        audit_queue=AuditQueueConfig(
            max_attempts=int(audit_queue.get("max_attempts", 5)),
            initial_backoff_seconds=float(audit_queue.get("initial_backoff_seconds", 0.5)),
            max_backoff_seconds=float(audit_queue.get("max_backoff_seconds", 30.0)),
            queue_size=int(audit_queue.get("queue_size", 10000)),
        ),
        regeneration=RegenerationConfig(
            batch_size=int(regeneration.get("batch_size", 100)),
            interval_seconds=float(regeneration.get("interval_seconds", 3600.0)),
        ),
        checksum=checksum,
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization.  Deterministic for equal input."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def load_config_file(path: Path) -> SettlementConfig:
    data = load_yaml_file(path)
    return parse_config(data, checksum=compute_checksum(data))
