"""
Tests for MilestoneService: draft editing, approval lifecycle, bank transfer.
"""

from decimal import Decimal

import pytest

from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidTransitionError,
    InvalidValueError,
)
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.milestone import MilestoneStatus
from settlement_kernel.models.project import Project
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.milestone_service import MilestoneService


@pytest.fixture
def service(session, clock):
    return MilestoneService(session, clock)


@pytest.fixture
def project_id(create_project):
    return create_project()


class TestDraft:

    def test_sequence_numbers_and_counter(self, session, service, project_id, test_actor_id):
        first = service.create(project_id, "Site survey", Decimal("1000"), test_actor_id)
        second = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)

        assert (first.sequence_number, second.sequence_number) == (1, 2)
        assert first.status == MilestoneStatus.DRAFT
        assert first.settlement_state == SettlementState.IDLE
        assert session.get(Project, project_id).total_milestones == 2
        assert [m.id for m in service.list_for_project(project_id)] == [first.id, second.id]

    def test_update_draft(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Survey", Decimal("1000"), test_actor_id)

        service.update(milestone.id, test_actor_id, title="Site survey", target_amount=Decimal("1200"))

        assert milestone.title == "Site survey"
        assert milestone.target_amount == Decimal("1200")

    def test_amounts_limited_to_minor_units(self, service, project_id, test_actor_id):
        with pytest.raises(InvalidValueError, match="more than 2 fractional digits"):
            service.create(project_id, "Survey", Decimal("1000.005"), test_actor_id)

        milestone = service.create(project_id, "Survey", Decimal("1000.50"), test_actor_id)
        with pytest.raises(InvalidValueError):
            service.update(milestone.id, test_actor_id, target_amount=Decimal("0.001"))

        service.submit(milestone.id, test_actor_id)
        service.approve(milestone.id, test_actor_id)
        with pytest.raises(InvalidValueError) as exc_info:
            service.attach_bank_transfer(milestone.id, "BANK-1", Decimal("1000.501"), test_actor_id)
        assert exc_info.value.field == "bank_transfer_amount"

    def test_update_unknown_field_rejected(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Survey", Decimal("1000"), test_actor_id)
        with pytest.raises(InvalidValueError):
            service.update(milestone.id, test_actor_id, status=MilestoneStatus.APPROVED)

    def test_update_after_submit_rejected(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Survey", Decimal("1000"), test_actor_id)
        service.submit(milestone.id, test_actor_id)

        with pytest.raises(InvalidTransitionError):
            service.update(milestone.id, test_actor_id, title="Changed")

    def test_delete_draft_decrements_counter(self, session, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Survey", Decimal("1000"), test_actor_id)

        service.delete(milestone.id, test_actor_id)

        assert service.list_for_project(project_id) == []
        assert session.get(Project, project_id).total_milestones == 0

    def test_non_positive_target_rejected(self, service, project_id, test_actor_id):
        with pytest.raises(InvalidValueError):
            service.create(project_id, "Free", Decimal("0"), test_actor_id)


class TestApproval:

    def test_submit_approve(self, service, project_id, test_actor_id, clock):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        service.submit(milestone.id, test_actor_id)
        service.approve(milestone.id, test_actor_id)

        assert milestone.status == MilestoneStatus.APPROVED
        assert milestone.approved_by_id == test_actor_id
        assert milestone.approved_at == clock.now()

    def test_approve_requires_submission(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        with pytest.raises(InvalidTransitionError):
            service.approve(milestone.id, test_actor_id)

    def test_reject_requires_reason(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        service.submit(milestone.id, test_actor_id)

        with pytest.raises(InvalidValueError):
            service.reject(milestone.id, test_actor_id, "  ")

        service.reject(milestone.id, test_actor_id, "Invoice missing")
        assert milestone.status == MilestoneStatus.REJECTED
        assert milestone.rejection_reason == "Invoice missing"

    def test_rejected_is_terminal(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        service.submit(milestone.id, test_actor_id)
        service.reject(milestone.id, test_actor_id, "No")

        with pytest.raises(InvalidTransitionError):
            service.approve(milestone.id, test_actor_id)

    def test_approval_is_audited(self, session, clock, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        service.submit(milestone.id, test_actor_id)
        service.approve(milestone.id, test_actor_id)

        trace = AuditorService(session, clock).get_trace("Milestone", milestone.id)
        assert AuditAction.MILESTONE_APPROVED in trace.actions


class TestBankTransfer:

    def test_attach_to_approved(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        service.submit(milestone.id, test_actor_id)
        service.approve(milestone.id, test_actor_id)

        service.attach_bank_transfer(milestone.id, "WIRE-42", Decimal("5000"), test_actor_id)

        assert milestone.bank_transfer_reference == "WIRE-42"
        assert milestone.bank_transfer_amount == Decimal("5000")

    def test_attach_before_approval_rejected(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        with pytest.raises(InvalidTransitionError):
            service.attach_bank_transfer(milestone.id, "WIRE-42", Decimal("5000"), test_actor_id)

    def test_reference_required(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        with pytest.raises(InvalidValueError):
            service.attach_bank_transfer(milestone.id, "", Decimal("5000"), test_actor_id)


class TestSettlementGuards:

    def test_release_requires_external_pending(self, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        with pytest.raises(InvalidTransitionError):
            service.release_pending(milestone.id, test_actor_id, "nothing pending")

    def test_release_pending_to_staged(self, session, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        milestone.settlement_state = SettlementState.EXTERNAL_PENDING
        session.flush()

        service.release_pending(milestone.id, test_actor_id, "not on the network")
        assert milestone.settlement_state == SettlementState.STAGED

    def test_external_reference_set_once(self, session, service, project_id, test_actor_id):
        milestone = service.create(project_id, "Panels", Decimal("5000"), test_actor_id)
        milestone.external_tx_ref = "tx-first"
        session.flush()

        milestone.external_tx_ref = "tx-second"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
