"""
Tests for the regeneration (revenue split) batch task.
"""

from dataclasses import replace
from decimal import Decimal
from uuid import UUID

import pytest
from sqlalchemy import select

from settlement_batch.domain.types import BatchItemStatus, BatchJobStatus
from settlement_batch.orchestrator import BatchOrchestrator
from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.types import LiquidityProviderSplit
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.capital_pool import PoolType
from settlement_kernel.models.revenue import (
    AllocationPolicy,
    RecipientType,
    RevenueAllocation,
    RevenueRecord,
)
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.pool_ledger import PoolLedgerService

HOLDER_A = UUID(int=1)
HOLDER_B = UUID(int=2)
HOLDER_C = UUID(int=3)
PROVIDER_X = UUID(int=101)
PROVIDER_Y = UUID(int=102)


@pytest.fixture
def batch(session_factory, config, clock, seeded_pools):
    return BatchOrchestrator(session_factory, config, clock)


def _allocations(session_factory, record_id: UUID, recipient_type: RecipientType):
    with transaction_scope(session_factory) as s:
        rows = s.execute(
            select(RevenueAllocation)
            .where(
                RevenueAllocation.revenue_record_id == record_id,
                RevenueAllocation.recipient_type == recipient_type,
            )
        ).scalars().all()
        return {row.recipient_id: row for row in rows}


def _balances(session_factory, clock, project_id: UUID) -> dict[str, Decimal]:
    with transaction_scope(session_factory) as s:
        ledger = PoolLedgerService(s, clock)
        return {
            "distribution": ledger.balance(PoolType.DISTRIBUTION),
            "project_cashflow": ledger.balance(PoolType.DISTRIBUTION, project_id),
            "liquidity": ledger.balance(PoolType.LIQUIDITY),
            "treasury": ledger.balance(PoolType.TREASURY),
        }


class TestDefaultSplit:

    def test_forty_thirty_twenty_ten(
        self, batch, session_factory, clock, create_project, verified_revenue,
        liquidity_provider, load,
    ):
        project_id = create_project(holdings={HOLDER_A: Decimal("300"), HOLDER_B: Decimal("700")})
        liquidity_provider(Decimal("5000"), PROVIDER_X)
        liquidity_provider(Decimal("1000"), PROVIDER_Y)
        record_id = verified_revenue(project_id, Decimal("1000"))

        result = batch.run_regeneration(idempotency_key="regen-1")

        assert result.status == BatchJobStatus.COMPLETED
        assert (result.total_items, result.succeeded) == (1, 1)
        data = result.item_results[0].result_data
        assert Decimal(data["token_holders"]) == Decimal("400")
        assert Decimal(data["liquidity_pool"]) == Decimal("300")
        assert Decimal(data["treasury"]) == Decimal("200")
        assert Decimal(data["project_reinvestment"]) == Decimal("100")
        assert data["recipients"] == 4

        holders = _allocations(session_factory, record_id, RecipientType.TOKEN_HOLDER)
        assert holders[HOLDER_A].amount == Decimal("120")
        assert holders[HOLDER_B].amount == Decimal("280")
        assert holders[HOLDER_A].policy == AllocationPolicy.TOKEN_WEIGHTED

        # Equal split regardless of contribution size.
        providers = _allocations(session_factory, record_id, RecipientType.LIQUIDITY_PROVIDER)
        assert providers[PROVIDER_X].amount == Decimal("150")
        assert providers[PROVIDER_Y].amount == Decimal("150")
        assert providers[PROVIDER_X].policy == AllocationPolicy.EQUAL

        assert _balances(session_factory, clock, project_id) == {
            "distribution": Decimal("500"),
            "project_cashflow": Decimal("100"),
            "liquidity": Decimal("300"),
            "treasury": Decimal("200"),
        }

        record = load(RevenueRecord, record_id)
        assert record.processed is True
        assert record.processed_at is not None

    def test_leftover_cent_goes_to_lowest_holder_id(
        self, batch, session_factory, create_project, verified_revenue, liquidity_provider,
    ):
        project_id = create_project(holdings={
            HOLDER_C: Decimal("1"), HOLDER_B: Decimal("1"), HOLDER_A: Decimal("1"),
        })
        liquidity_provider(Decimal("100"), PROVIDER_X)
        record_id = verified_revenue(project_id, Decimal("100"))

        batch.run_regeneration(idempotency_key="regen-1")

        holders = _allocations(session_factory, record_id, RecipientType.TOKEN_HOLDER)
        assert holders[HOLDER_A].amount == Decimal("13.34")
        assert holders[HOLDER_B].amount == Decimal("13.33")
        assert holders[HOLDER_C].amount == Decimal("13.33")
        assert sum(h.amount for h in holders.values()) == Decimal("40")

    def test_audit_event_per_record(
        self, batch, session_factory, clock, create_project, verified_revenue, liquidity_provider,
    ):
        project_id = create_project(holdings={HOLDER_A: Decimal("10")})
        liquidity_provider(Decimal("100"), PROVIDER_X)
        record_id = verified_revenue(project_id, Decimal("250.5"))

        batch.run_regeneration(idempotency_key="regen-1")

        with transaction_scope(session_factory) as s:
            trace = AuditorService(s, clock).get_trace("RevenueRecord", record_id)
            assert trace.actions == (AuditAction.REVENUE_PROCESSED,)
            payload = trace.entries[0].payload
            assert payload["token_holders"] == "100.2"
            assert payload["split_override"] is False


class TestRecipientsMissing:

    def test_no_token_holders_leaves_record_unprocessed(
        self, batch, session_factory, clock, create_project, verified_revenue,
        liquidity_provider, load,
    ):
        project_id = create_project()
        liquidity_provider(Decimal("100"), PROVIDER_X)
        record_id = verified_revenue(project_id, Decimal("1000"))

        result = batch.run_regeneration(idempotency_key="regen-1")

        assert result.status == BatchJobStatus.FAILED
        failure = result.failed_results[0]
        assert failure.item_key == str(record_id)
        assert failure.error_code == "NO_ELIGIBLE_HOLDERS"
        assert load(RevenueRecord, record_id).processed is False
        # The SAVEPOINT discarded every partial write.
        assert set(_balances(session_factory, clock, project_id).values()) == {Decimal("0")}
        assert _allocations(session_factory, record_id, RecipientType.TOKEN_HOLDER) == {}

    def test_no_liquidity_providers(self, batch, create_project, verified_revenue, load):
        project_id = create_project(holdings={HOLDER_A: Decimal("10")})
        record_id = verified_revenue(project_id, Decimal("1000"))

        result = batch.run_regeneration(idempotency_key="regen-1")

        assert result.failed_results[0].error_code == "NO_ELIGIBLE_HOLDERS"
        assert load(RevenueRecord, record_id).processed is False

    def test_failed_record_retried_next_run(
        self, batch, create_project, verified_revenue, liquidity_provider, load,
    ):
        project_id = create_project(holdings={HOLDER_A: Decimal("10")})
        record_id = verified_revenue(project_id, Decimal("1000"))
        batch.run_regeneration(idempotency_key="regen-1")

        liquidity_provider(Decimal("100"), PROVIDER_X)
        result = batch.run_regeneration(idempotency_key="regen-2")

        assert result.status == BatchJobStatus.COMPLETED
        assert result.item_results[0].item_key == str(record_id)
        assert load(RevenueRecord, record_id).processed is True

    def test_one_failure_does_not_block_others(
        self, batch, create_project, verified_revenue, liquidity_provider,
    ):
        liquidity_provider(Decimal("100"), PROVIDER_X)
        empty = create_project(name="No holders")
        held = create_project(name="Held", holdings={HOLDER_A: Decimal("10")})
        verified_revenue(empty, Decimal("100"))
        verified_revenue(held, Decimal("100"))

        result = batch.run_regeneration(idempotency_key="regen-1")

        assert result.status == BatchJobStatus.PARTIALLY_COMPLETED
        assert (result.succeeded, result.failed) == (1, 1)


class TestSplitVariants:

    def test_project_override_needs_no_liquidity_providers(
        self, batch, session_factory, clock, create_project, verified_revenue,
    ):
        project_id = create_project(
            holdings={HOLDER_A: Decimal("10")},
            split=(Decimal("50"), Decimal("0"), Decimal("25"), Decimal("25")),
        )
        verified_revenue(project_id, Decimal("1000"))

        result = batch.run_regeneration(idempotency_key="regen-1")

        assert result.status == BatchJobStatus.COMPLETED
        assert _balances(session_factory, clock, project_id) == {
            "distribution": Decimal("750"),
            "project_cashflow": Decimal("250"),
            "liquidity": Decimal("0"),
            "treasury": Decimal("250"),
        }

    def test_contribution_weighted_providers(
        self, session_factory, config, clock, seeded_pools, create_project,
        verified_revenue, liquidity_provider,
    ):
        weighted = replace(
            config, liquidity_provider_split=LiquidityProviderSplit.CONTRIBUTION_WEIGHTED,
        )
        batch = BatchOrchestrator(session_factory, weighted, clock)
        project_id = create_project(holdings={HOLDER_A: Decimal("10")})
        liquidity_provider(Decimal("100"), PROVIDER_X)
        liquidity_provider(Decimal("200"), PROVIDER_Y)
        record_id = verified_revenue(project_id, Decimal("1000"))

        batch.run_regeneration(idempotency_key="regen-1")

        providers = _allocations(session_factory, record_id, RecipientType.LIQUIDITY_PROVIDER)
        assert providers[PROVIDER_X].amount == Decimal("100")
        assert providers[PROVIDER_Y].amount == Decimal("200")
        assert providers[PROVIDER_Y].policy == AllocationPolicy.CONTRIBUTION_WEIGHTED


class TestSelection:

    def test_processed_records_not_picked_again(
        self, batch, create_project, verified_revenue, liquidity_provider,
    ):
        project_id = create_project(holdings={HOLDER_A: Decimal("10")})
        liquidity_provider(Decimal("100"), PROVIDER_X)
        verified_revenue(project_id, Decimal("100"))
        batch.run_regeneration(idempotency_key="regen-1")

        again = batch.run_regeneration(idempotency_key="regen-2")

        assert again.status == BatchJobStatus.COMPLETED
        assert again.total_items == 0

    def test_project_filter_and_limit(
        self, batch, create_project, verified_revenue, liquidity_provider,
    ):
        liquidity_provider(Decimal("100"), PROVIDER_X)
        first = create_project(name="First", holdings={HOLDER_A: Decimal("10")})
        second = create_project(name="Second", holdings={HOLDER_B: Decimal("10")})
        verified_revenue(first, Decimal("100"), "2024-01")
        verified_revenue(first, Decimal("100"), "2024-02")
        verified_revenue(second, Decimal("100"), "2024-01")

        only_second = batch.run_regeneration(project_id=second, idempotency_key="regen-1")
        limited = batch.run_regeneration(limit=1, idempotency_key="regen-2")

        assert only_second.total_items == 1
        assert limited.total_items == 1
        assert all(r.status == BatchItemStatus.SUCCEEDED for r in limited.item_results)
