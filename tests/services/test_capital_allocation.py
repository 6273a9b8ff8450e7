"""
Tests for pool-to-project capital allocation.
"""

from dataclasses import replace
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select

from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import AssetNetworkError
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.capital_allocation import CapitalAllocation
from settlement_kernel.models.capital_pool import PoolType
from settlement_kernel.models.project import Project
from settlement_kernel.models.project_wallet import ProjectWallet
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.pool_ledger import PoolLedgerService
from settlement_services.settlement_orchestrator import SettlementOrchestrator


def _wallet_address(session_factory, project_id: UUID) -> str:
    with transaction_scope(session_factory) as s:
        return s.execute(
            select(ProjectWallet.address).where(ProjectWallet.project_id == project_id)
        ).scalar_one()


def _set_reserve(session_factory, clock, pool_type: PoolType, reserve: Decimal) -> None:
    with transaction_scope(session_factory) as s:
        PoolLedgerService(s, clock).get_pool(pool_type, lock=True).min_reserve = reserve


@pytest.fixture
def project_id(create_project):
    return create_project(nav=Decimal("5000"), holdings={UUID(int=7): Decimal("100")})


class TestAllocation:

    def test_provisions_wallet_and_transfers(
        self, orchestrator, network, config, session_factory, clock,
        project_id, fund_pool, load, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("1000"))

        result = orchestrator.allocate_capital(project_id, Decimal("400"), test_actor_id)

        assert result.success, result.to_dict()
        assert result.data["pool_type"] == "liquidity"
        asset = config.network.asset_code
        address = _wallet_address(session_factory, project_id)
        assert network.get_balance(address, asset) == Decimal("400")
        assert network.get_balance(config.pool("liquidity").wallet_address, asset) == Decimal("600")

        assert load(Project, project_id).capital_allocated == Decimal("400")
        allocation = load(CapitalAllocation, UUID(result.data["allocation_id"]))
        assert allocation.settlement_state == SettlementState.CONFIRMED
        assert allocation.external_tx_ref == result.data["external_tx_ref"]
        with transaction_scope(session_factory) as s:
            assert PoolLedgerService(s, clock).balance(PoolType.LIQUIDITY) == Decimal("600")

    def test_from_treasury(self, orchestrator, project_id, fund_pool, test_actor_id):
        fund_pool(PoolType.TREASURY, Decimal("50"))

        result = orchestrator.allocate_capital(
            project_id, Decimal("50"), test_actor_id, pool_type=PoolType.TREASURY, notes="bridge",
        )

        assert result.success
        assert result.data["pool_type"] == "treasury"

    def test_insufficient_pool_balance(
        self, orchestrator, network, project_id, fund_pool, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))

        result = orchestrator.allocate_capital(project_id, Decimal("150"), test_actor_id)

        assert result.code == "INSUFFICIENT_FUNDS"
        breakdown = result.data["breakdown"][0]
        assert Decimal(breakdown["available"]) == Decimal("100")
        assert network.call_count("transfer") == 0

    def test_reserve_floor_respected(
        self, orchestrator, session_factory, clock, project_id, fund_pool, test_actor_id,
    ):
        fund_pool(PoolType.TREASURY, Decimal("100"))
        _set_reserve(session_factory, clock, PoolType.TREASURY, Decimal("20"))

        over = orchestrator.allocate_capital(
            project_id, Decimal("85"), test_actor_id, pool_type=PoolType.TREASURY,
        )
        exact = orchestrator.allocate_capital(
            project_id, Decimal("80"), test_actor_id, pool_type=PoolType.TREASURY,
        )

        assert over.code == "INSUFFICIENT_FUNDS"
        assert Decimal(over.data["breakdown"][0]["reserve_floor"]) == Decimal("20")
        assert exact.success

    def test_non_positive_amount(self, orchestrator, project_id, fund_pool, test_actor_id):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        result = orchestrator.allocate_capital(project_id, Decimal("0"), test_actor_id)
        assert result.code == "INVALID_VALUE"

    def test_amount_beyond_minor_units_rejected(
        self, orchestrator, network, session_factory, clock, project_id, fund_pool, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        orchestrator.provision_wallet(project_id, test_actor_id)

        result = orchestrator.allocate_capital(project_id, Decimal("10.123456789"), test_actor_id)

        assert result.code == "INVALID_VALUE"
        assert result.data["field"] == "amount"
        assert network.call_count("transfer") == 0
        with transaction_scope(session_factory) as s:
            assert s.execute(select(func.count(CapitalAllocation.id))).scalar_one() == 0
            assert PoolLedgerService(s, clock).balance(PoolType.LIQUIDITY) == Decimal("100")

    def test_network_receives_recorded_amount(
        self, orchestrator, network, config, session_factory, project_id, fund_pool, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))

        result = orchestrator.allocate_capital(project_id, Decimal("10.10"), test_actor_id)

        assert result.success
        assert network.calls[-1].args[3] == "10.1000000"
        address = _wallet_address(session_factory, project_id)
        assert network.get_balance(address, config.network.asset_code) == Decimal(result.data["amount"])


class TestFailures:

    def test_wallet_provisioning_failure_returned(
        self, orchestrator, network, session_factory, project_id, fund_pool, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        network.fail_next("create_account", AssetNetworkError("create_account", "unavailable"))

        result = orchestrator.allocate_capital(project_id, Decimal("10"), test_actor_id)

        assert result.code == "NETWORK_ERROR"
        with transaction_scope(session_factory) as s:
            assert s.execute(select(func.count(CapitalAllocation.id))).scalar_one() == 0

    def test_definite_failure_then_retry_by_id(
        self, orchestrator, network, session_factory, clock, project_id, fund_pool, load, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        orchestrator.provision_wallet(project_id, test_actor_id)
        network.fail_next("transfer", AssetNetworkError("transfer", "rejected"))

        failed = orchestrator.allocate_capital(project_id, Decimal("60"), test_actor_id)

        assert failed.retryable is True
        allocation_id = UUID(failed.data["entity_id"])
        assert load(CapitalAllocation, allocation_id).settlement_state == SettlementState.STAGED
        with transaction_scope(session_factory) as s:
            assert PoolLedgerService(s, clock).pending_outflows(PoolType.LIQUIDITY) == Decimal("0")

        # The amount on the staged row wins over the argument.
        retried = orchestrator.allocate_capital(
            project_id, Decimal("1"), test_actor_id, allocation_id=allocation_id,
        )

        assert retried.success
        assert retried.data["allocation_id"] == str(allocation_id)
        assert Decimal(retried.data["amount"]) == Decimal("60")

    def test_unconfirmed_allocation_reserves_balance(
        self, orchestrator, network, project_id, fund_pool, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        orchestrator.provision_wallet(project_id, test_actor_id)
        network.timeout_next("transfer")

        pending = orchestrator.allocate_capital(project_id, Decimal("70"), test_actor_id)
        second = orchestrator.allocate_capital(project_id, Decimal("40"), test_actor_id)

        assert pending.code == "NETWORK_TIMEOUT"
        assert second.code == "INSUFFICIENT_FUNDS"
        assert Decimal(second.data["breakdown"][0]["pending_outflows"]) == Decimal("70")

    def test_operator_release_then_retry(
        self, orchestrator, network, session_factory, clock, project_id, fund_pool, load, test_actor_id,
    ):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        orchestrator.provision_wallet(project_id, test_actor_id)
        network.timeout_next("transfer")
        pending = orchestrator.allocate_capital(project_id, Decimal("70"), test_actor_id)
        allocation_id = UUID(pending.data["entity_id"])

        released = orchestrator.release_allocation(allocation_id, test_actor_id, "not on the network")

        assert released.success
        assert load(CapitalAllocation, allocation_id).settlement_state == SettlementState.STAGED
        with transaction_scope(session_factory) as s:
            assert PoolLedgerService(s, clock).pending_outflows(PoolType.LIQUIDITY) == Decimal("0")
            trace = AuditorService(s, clock).get_trace("CapitalAllocation", allocation_id)
        assert trace.actions[-1] == AuditAction.SETTLEMENT_RELEASED

        retried = orchestrator.allocate_capital(
            project_id, Decimal("70"), test_actor_id, allocation_id=allocation_id,
        )
        assert retried.success

    def test_release_requires_pending(self, orchestrator, project_id, fund_pool, test_actor_id):
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        done = orchestrator.allocate_capital(project_id, Decimal("10"), test_actor_id)

        result = orchestrator.release_allocation(
            UUID(done.data["allocation_id"]), test_actor_id, "already settled",
        )

        assert result.code == "INVALID_TRANSITION"
        assert orchestrator.release_allocation(uuid4(), test_actor_id, "x").code == "ENTITY_NOT_FOUND"

    def test_configured_deadline_leaves_allocation_pending(
        self, network, secret_store, config, session_factory, clock,
        project_id, fund_pool, load, test_actor_id,
    ):
        fast = replace(config, network=replace(config.network, call_timeout_seconds=0.05))
        orchestrator = SettlementOrchestrator(
            session_factory=session_factory,
            network=network,
            secret_store=secret_store,
            config=fast,
            clock=clock,
        )
        fund_pool(PoolType.LIQUIDITY, Decimal("100"))
        orchestrator.provision_wallet(project_id, test_actor_id)
        network.set_latency("transfer", 5.0)

        result = orchestrator.allocate_capital(project_id, Decimal("30"), test_actor_id)

        assert result.code == "NETWORK_TIMEOUT"
        assert result.data["state"] == "external_pending"
        allocation = load(CapitalAllocation, UUID(result.data["entity_id"]))
        assert allocation.settlement_state == SettlementState.EXTERNAL_PENDING
        assert allocation.external_tx_ref is None
