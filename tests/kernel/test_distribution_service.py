"""
Tests for DistributionService: event lifecycle, pro-rata allocation, withdrawals.
"""

from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from settlement_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidTransitionError,
    InvalidValueError,
    NoEligibleHoldersError,
    WithdrawalExceedsAvailableError,
)
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.distribution import AllocationStatus, DistributionStatus
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.distribution_service import DistributionService

HOLDER_A = UUID("aaaaaaaa-0000-0000-0000-000000000001")
HOLDER_B = UUID("bbbbbbbb-0000-0000-0000-000000000002")


@pytest.fixture
def project_id(create_project):
    return create_project(
        nav=Decimal("10000"),
        holdings={HOLDER_A: Decimal("300"), HOLDER_B: Decimal("700")},
    )


@pytest.fixture
def service(session, clock):
    return DistributionService(session, clock)


def _calculated(service, project_id, actor_id, total=Decimal("1000.00")):
    event = service.create_event(project_id, "Q1 distribution", total, actor_id)
    service.calculate_allocations(event.id, actor_id)
    return event


class TestCalculation:

    def test_pro_rata_by_tokens_held(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)

        allocations = service.get_allocations(event.id)
        amounts = {a.holder_id: a.allocated_amount for a in allocations}
        assert amounts == {HOLDER_A: Decimal("300.00"), HOLDER_B: Decimal("700.00")}
        assert all(a.status == AllocationStatus.PENDING for a in allocations)

        assert event.status == DistributionStatus.CALCULATED
        assert event.total_allocated == Decimal("1000.00")
        assert event.holders_count == 2
        assert event.snapshot_total_weight == Decimal("1000")
        assert event.snapshot_nav == Decimal("10.0000000")

    def test_allocations_sum_to_total_with_leftover(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id, total=Decimal("0.03"))

        allocations = service.get_allocations(event.id)
        assert sum((a.allocated_amount for a in allocations), Decimal("0")) == Decimal("0.03")

        trace = AuditorService(service.session, service.clock).get_trace("DistributionEvent", event.id)
        assert trace.last_action == AuditAction.ALLOCATIONS_CALCULATED

    def test_no_holders(self, service, create_project, test_actor_id):
        empty_project = create_project(name="Empty")
        event = service.create_event(empty_project, "Nothing to share", Decimal("10"), test_actor_id)

        with pytest.raises(NoEligibleHoldersError):
            service.calculate_allocations(event.id, test_actor_id)

    def test_calculate_twice_rejected(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)
        with pytest.raises(InvalidTransitionError):
            service.calculate_allocations(event.id, test_actor_id)

    def test_non_positive_total_rejected(self, service, project_id, test_actor_id):
        with pytest.raises(InvalidValueError):
            service.create_event(project_id, "Zero", Decimal("0"), test_actor_id)

    def test_allocations_frozen_after_calculation(self, session, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)
        allocation = service.get_allocations(event.id)[0]

        allocation.allocated_amount = Decimal("999.99")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestLifecycle:

    def test_activate_then_withdraw_to_completion(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)
        service.activate_event(event.id, test_actor_id)

        allocations = {a.holder_id: a for a in service.get_allocations(event.id)}
        assert all(a.status == AllocationStatus.AVAILABLE for a in allocations.values())

        service.record_withdrawal(allocations[HOLDER_A].id, Decimal("100.00"), test_actor_id)
        assert allocations[HOLDER_A].available_amount == Decimal("200.00")
        assert allocations[HOLDER_A].status == AllocationStatus.AVAILABLE
        assert event.status == DistributionStatus.ACTIVE

        service.record_withdrawal(allocations[HOLDER_A].id, Decimal("200.00"), test_actor_id)
        service.record_withdrawal(
            allocations[HOLDER_B].id, Decimal("700.00"), test_actor_id, external_tx_ref="tx-b",
        )

        assert allocations[HOLDER_A].status == AllocationStatus.WITHDRAWN
        assert event.total_withdrawn == Decimal("1000.00")
        assert event.status == DistributionStatus.COMPLETED

    def test_withdrawal_exceeding_available(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)
        service.activate_event(event.id, test_actor_id)
        allocation = service.get_allocations(event.id)[0]

        with pytest.raises(WithdrawalExceedsAvailableError):
            service.record_withdrawal(
                allocation.id, allocation.available_amount + Decimal("0.01"), test_actor_id,
            )

    def test_withdrawal_requires_active_event(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)
        allocation = service.get_allocations(event.id)[0]

        with pytest.raises(InvalidTransitionError):
            service.record_withdrawal(allocation.id, Decimal("1.00"), test_actor_id)

    def test_cancel_calculated_event(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)

        service.cancel_event(event.id, test_actor_id, "Wrong total")

        assert event.status == DistributionStatus.CANCELLED
        assert event.cancellation_reason == "Wrong total"
        assert all(
            a.status == AllocationStatus.CANCELLED for a in service.get_allocations(event.id)
        )

    def test_active_event_cannot_be_cancelled(self, service, project_id, test_actor_id):
        event = _calculated(service, project_id, test_actor_id)
        service.activate_event(event.id, test_actor_id)

        with pytest.raises(InvalidTransitionError):
            service.cancel_event(event.id, test_actor_id, "too late")


class TestQueries:

    def test_holder_allocations_and_project_events(self, service, project_id, test_actor_id):
        first = _calculated(service, project_id, test_actor_id)
        _calculated(service, project_id, test_actor_id, total=Decimal("50.00"))

        assert len(service.get_holder_allocations(HOLDER_A)) == 2
        assert len(service.get_holder_allocations(HOLDER_A, project_id=uuid4())) == 0
        assert [e.id for e in service.get_project_events(project_id)][0] == first.id
        assert len(service.get_project_events(project_id, DistributionStatus.DRAFT)) == 0

    def test_stats_exclude_cancelled_amounts(self, service, project_id, test_actor_id):
        kept = _calculated(service, project_id, test_actor_id)
        service.activate_event(kept.id, test_actor_id)
        allocation = service.get_allocations(kept.id)[0]
        service.record_withdrawal(allocation.id, Decimal("10.00"), test_actor_id)

        dropped = _calculated(service, project_id, test_actor_id, total=Decimal("500.00"))
        service.cancel_event(dropped.id, test_actor_id, "duplicate")

        stats = service.get_stats(project_id)
        assert stats.event_count == 2
        assert stats.by_status == {"active": 1, "cancelled": 1}
        assert stats.total_amount == Decimal("1000.00")
        assert stats.total_withdrawn == Decimal("10.00")
        assert stats.outstanding == Decimal("990.00")
