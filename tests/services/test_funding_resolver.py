"""
Tests for FundingSourceResolver against the pool ledger.
"""

from decimal import Decimal

import pytest

from settlement_kernel.domain.types import FundingSource
from settlement_kernel.exceptions import InsufficientFundsError
from settlement_kernel.models.capital_pool import PoolDirection, PoolType
from settlement_kernel.services.pool_ledger import PoolLedgerService
from settlement_services.funding_resolver import FundingSourceResolver

PRIORITY = (
    FundingSource.PROJECT_CASHFLOW,
    FundingSource.TREASURY,
    FundingSource.LIQUIDITY_POOL,
)


@pytest.fixture
def ledger(session, clock, seeded_pools):
    return PoolLedgerService(session, clock)


@pytest.fixture
def project_id(create_project):
    return create_project()


def test_candidates_in_priority_order(session, clock, ledger, project_id):
    ledger.record(PoolType.DISTRIBUTION, PoolDirection.INFLOW, Decimal("30"), "reinvest", project_id=project_id)
    ledger.record(PoolType.DISTRIBUTION, PoolDirection.INFLOW, Decimal("900"), "holders")
    ledger.record(PoolType.TREASURY, PoolDirection.INFLOW, Decimal("200"), "seed")
    ledger.get_pool(PoolType.TREASURY).min_reserve = Decimal("50")

    candidates = FundingSourceResolver(session, PRIORITY, clock).candidates(project_id)

    assert [c.source for c in candidates] == list(PRIORITY)
    # Only the project's own share of the distribution pool is its cashflow.
    assert candidates[0].balance == Decimal("30")
    assert candidates[0].reserve_floor == Decimal("0")
    assert candidates[1].available == Decimal("150")
    assert candidates[2].balance == Decimal("0")


def test_resolve_skips_insufficient_source(session, clock, ledger, project_id):
    ledger.record(PoolType.DISTRIBUTION, PoolDirection.INFLOW, Decimal("30"), "reinvest", project_id=project_id)
    ledger.record(PoolType.LIQUIDITY, PoolDirection.INFLOW, Decimal("500"), "seed")

    decision = FundingSourceResolver(session, PRIORITY, clock).resolve(project_id, Decimal("100"))

    assert decision.source == FundingSource.LIQUIDITY_POOL
    assert [row["sufficient"] for row in decision.breakdown] == [False, False, True]


def test_custom_priority(session, clock, ledger, project_id):
    ledger.record(PoolType.TREASURY, PoolDirection.INFLOW, Decimal("500"), "seed")
    ledger.record(PoolType.LIQUIDITY, PoolDirection.INFLOW, Decimal("500"), "seed")

    decision = FundingSourceResolver(
        session, (FundingSource.LIQUIDITY_POOL, FundingSource.TREASURY), clock,
    ).resolve(project_id, Decimal("100"))

    assert decision.source == FundingSource.LIQUIDITY_POOL


def test_nothing_covers_required(session, clock, ledger, project_id):
    ledger.record(PoolType.TREASURY, PoolDirection.INFLOW, Decimal("99.99"), "seed")

    with pytest.raises(InsufficientFundsError) as exc_info:
        FundingSourceResolver(session, PRIORITY, clock).resolve(project_id, Decimal("100"))

    assert exc_info.value.required == "100"
    assert len(exc_info.value.breakdown) == 3
