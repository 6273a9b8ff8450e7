"""
Tests for milestone disbursement: burn on the network, then revalue the project.

Verifies:
- Happy path burns the amount and reduces NAV by it
- A second disbursement never reaches the network
- Precondition failures are rejected before any network call, including a
  burn that would leave a zero token price
- Timeout and definite-failure paths leave the right settlement state
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import UnderfundedError
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.milestone import Milestone, MilestoneStatus
from settlement_kernel.models.project import Project
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.milestone_service import MilestoneService
from settlement_kernel.services.nav_ledger import NavLedgerService
from settlement_kernel.services.reconciliation_ledger import ReconciliationLedgerService


@pytest.fixture
def project(funded_project):
    return funded_project(nav=Decimal("10000"), wallet_balance=Decimal("5000"))


class TestDisbursement:

    def test_burns_and_reduces_nav(
        self, orchestrator, network, config, project, approved_milestone, load, test_actor_id,
    ):
        project_id, address = project
        milestone_id = approved_milestone(project_id, Decimal("2500"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.success, result.to_dict()
        assert Decimal(result.data["new_nav"]) == Decimal("7500")
        assert Decimal(result.data["nav_per_token"]) == Decimal("7.5")
        assert network.get_balance(address, config.network.asset_code) == Decimal("2500")

        milestone = load(Milestone, milestone_id)
        assert milestone.status == MilestoneStatus.DISBURSED
        assert milestone.settlement_state == SettlementState.CONFIRMED
        assert milestone.external_tx_ref == result.data["external_tx_ref"]
        assert milestone.burned_amount == Decimal("2500")
        assert load(Project, project_id).nav == Decimal("7500")

    def test_nav_history_and_audit(
        self, orchestrator, session_factory, clock, project, approved_milestone, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("1000"))

        orchestrator.disburse_milestone(milestone_id, test_actor_id)

        with transaction_scope(session_factory) as s:
            history = NavLedgerService(s, clock).get_nav_history(project_id)
            assert [r.value_per_token for r in history] == [Decimal("9"), Decimal("10")]
            trace = AuditorService(s, clock).get_trace("Milestone", milestone_id)
            assert trace.last_action == AuditAction.MILESTONE_DISBURSED
            assert AuditorService(s, clock).verify_chain()

    def test_second_disbursement_is_already_settled(
        self, orchestrator, network, project, approved_milestone, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("2500"))
        first = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        second = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert not second.success
        assert second.code == "ALREADY_SETTLED"
        assert second.data["external_ref"] == first.data["external_tx_ref"]
        assert network.call_count("transfer") == 1


class TestPreconditions:

    def test_exceeds_nav_never_reaches_network(
        self, orchestrator, network, project, approved_milestone, load, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("10000.01"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "EXCEEDS_NAV"
        assert result.retryable is False
        assert Decimal(result.data["amount"]) == Decimal("10000.01")
        assert network.call_count("transfer") == 0
        assert load(Milestone, milestone_id).settlement_state == SettlementState.IDLE

    def test_burning_full_nav_never_reaches_network(
        self, orchestrator, network, session_factory, clock, project, approved_milestone,
        load, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("10000"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "DEGENERATE_TOKEN_PRICE"
        assert not result.partial_success
        assert Decimal(result.data["price"]) == Decimal("0")
        assert network.call_count("transfer") == 0
        assert load(Milestone, milestone_id).settlement_state == SettlementState.IDLE
        assert load(Project, project_id).nav == Decimal("10000")
        with transaction_scope(session_factory) as s:
            assert ReconciliationLedgerService(s, clock).list_unresolved() == []

    def test_price_rounding_to_zero_rejected(
        self, orchestrator, network, funded_project, approved_milestone, test_actor_id,
    ):
        project_id, _ = funded_project(nav=Decimal("100"), holdings={uuid4(): Decimal("1000000")})
        # 0.01 left over a million tokens is below the 7 dp price unit.
        milestone_id = approved_milestone(project_id, Decimal("99.99"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "DEGENERATE_TOKEN_PRICE"
        assert network.call_count("transfer") == 0

    def test_smallest_viable_remainder_settles(
        self, orchestrator, funded_project, approved_milestone, test_actor_id,
    ):
        project_id, _ = funded_project(nav=Decimal("100"), holdings={uuid4(): Decimal("1000")})
        milestone_id = approved_milestone(project_id, Decimal("99.99"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.success, result.to_dict()
        assert Decimal(result.data["nav_per_token"]) == Decimal("0.00001")

    def test_missing_bank_transfer(
        self, orchestrator, network, project, approved_milestone, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("100"), bank_reference=None)

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "MISSING_BANK_TRANSFER"
        assert network.call_count("transfer") == 0

    def test_requires_outstanding_tokens(
        self, orchestrator, funded_project, approved_milestone, test_actor_id,
    ):
        project_id, _ = funded_project(holdings={})
        milestone_id = approved_milestone(project_id, Decimal("100"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "NO_OUTSTANDING_TOKENS"

    def test_requires_funded_wallet(
        self, orchestrator, create_project, approved_milestone, test_actor_id,
    ):
        project_id = create_project(nav=Decimal("10000"), holdings={uuid4(): Decimal("10")})
        milestone_id = approved_milestone(project_id, Decimal("100"))

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "WALLET_NOT_READY"

    def test_requires_approval(
        self, orchestrator, session_factory, clock, project, test_actor_id,
    ):
        project_id, _ = project
        with transaction_scope(session_factory) as s:
            milestone_id = MilestoneService(s, clock).create(
                project_id, "Draft only", Decimal("100"), test_actor_id,
            ).id

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "INVALID_TRANSITION"


class TestExternalFailures:

    def test_timeout_leaves_outcome_unknown(
        self, orchestrator, network, project, approved_milestone, load, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("2500"))
        network.timeout_next("transfer", applied=True)

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert result.code == "NETWORK_TIMEOUT"
        assert result.retryable is False
        assert result.data["state"] == "external_pending"
        milestone = load(Milestone, milestone_id)
        assert milestone.settlement_state == SettlementState.EXTERNAL_PENDING
        assert milestone.external_tx_ref is None
        assert load(Project, project_id).nav == Decimal("10000")

        again = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert again.code == "SETTLEMENT_OUTCOME_UNKNOWN"
        assert network.call_count("transfer") == 1

    def test_released_timeout_can_be_resent(
        self, orchestrator, network, session_factory, clock, project, approved_milestone, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("2500"))
        network.timeout_next("transfer", applied=False)
        orchestrator.disburse_milestone(milestone_id, test_actor_id)

        with transaction_scope(session_factory) as s:
            MilestoneService(s, clock).release_pending(
                milestone_id, test_actor_id, "transfer not found on network",
            )

        result = orchestrator.disburse_milestone(milestone_id, test_actor_id)
        assert result.success
        assert network.call_count("transfer") == 2

    def test_definite_failure_is_retryable(
        self, orchestrator, network, project, approved_milestone, load, test_actor_id,
    ):
        project_id, _ = project
        milestone_id = approved_milestone(project_id, Decimal("2500"))
        network.fail_next("transfer", UnderfundedError("transfer", "wallet empty"))

        failed = orchestrator.disburse_milestone(milestone_id, test_actor_id)

        assert failed.code == "NETWORK_UNDERFUNDED"
        assert failed.retryable is True
        assert failed.to_dict()["retryable"] is True
        assert load(Milestone, milestone_id).settlement_state == SettlementState.STAGED

        retried = orchestrator.disburse_milestone(milestone_id, test_actor_id)
        assert retried.success
