"""
Tests for NavLedgerService: versioned, single-active NAV history.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from settlement_kernel.exceptions import (
    EntityNotFoundError,
    InvalidValueError,
    NoNavAvailableError,
)
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.nav_record import NavRecord, NavSource
from settlement_kernel.models.project import Project
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.nav_ledger import NavLedgerService


def _active_count(session, project_id) -> int:
    return session.execute(
        select(func.count(NavRecord.id)).where(
            NavRecord.project_id == project_id,
            NavRecord.is_superseded.is_(False),
        )
    ).scalar_one()


class TestRecordNav:

    def test_first_record_is_active_version_one(self, session, clock, create_project, test_actor_id):
        project_id = create_project()
        ledger = NavLedgerService(session, clock)

        record = ledger.record_nav(project_id, Decimal("10.0000000"), NavSource.MANUAL, test_actor_id)

        assert record.version == 1
        assert record.is_superseded is False
        assert ledger.get_active_nav(project_id).id == record.id

    def test_new_record_supersedes_previous(self, session, clock, create_project, test_actor_id):
        project_id = create_project()
        ledger = NavLedgerService(session, clock)

        first = ledger.record_nav(project_id, Decimal("10"), NavSource.MANUAL, test_actor_id)
        clock.advance(60)
        second = ledger.record_nav(project_id, Decimal("12.5"), NavSource.AUDITED, test_actor_id)

        assert first.is_superseded is True
        assert second.version == 2
        assert ledger.get_active_nav(project_id).value_per_token == Decimal("12.5")
        assert _active_count(session, project_id) == 1

    def test_exactly_one_active_after_many_updates(
        self, session, clock, create_project, test_actor_id,
    ):
        project_id = create_project()
        ledger = NavLedgerService(session, clock)

        for i in range(1, 8):
            ledger.record_nav(project_id, Decimal(i), NavSource.FORMULA, test_actor_id)
            assert _active_count(session, project_id) == 1

        history = ledger.get_nav_history(project_id)
        assert [r.version for r in history] == [7, 6, 5, 4, 3, 2, 1]
        assert [r.is_superseded for r in history] == [False] + [True] * 6

    def test_sets_project_token_price(self, session, clock, create_project, test_actor_id):
        project_id = create_project()
        NavLedgerService(session, clock).record_nav(
            project_id, Decimal("4.2500000"), NavSource.MANUAL, test_actor_id,
        )
        assert session.get(Project, project_id).token_price == Decimal("4.25")

    @pytest.mark.parametrize("value", [Decimal("0"), Decimal("-1")])
    def test_non_positive_value_rejected(self, session, clock, create_project, test_actor_id, value):
        project_id = create_project()
        with pytest.raises(InvalidValueError):
            NavLedgerService(session, clock).record_nav(
                project_id, value, NavSource.MANUAL, test_actor_id,
            )
        assert _active_count(session, project_id) == 0

    def test_unknown_project(self, session, clock, test_actor_id):
        with pytest.raises(EntityNotFoundError):
            NavLedgerService(session, clock).record_nav(
                uuid4(), Decimal("1"), NavSource.MANUAL, test_actor_id,
            )

    def test_audited(self, session, clock, create_project, test_actor_id):
        project_id = create_project()
        ledger = NavLedgerService(session, clock)
        ledger.record_nav(project_id, Decimal("10.5"), NavSource.MANUAL, test_actor_id)
        ledger.record_nav(project_id, Decimal("11.25"), NavSource.MANUAL, test_actor_id)

        trace = AuditorService(session, clock).get_trace("Project", project_id)
        assert trace.actions == (AuditAction.NAV_RECORDED, AuditAction.NAV_RECORDED)
        assert trace.entries[-1].payload["previous_value_per_token"] == "10.5"


class TestActiveNav:

    def test_no_nav_is_a_hard_block(self, session, clock, create_project):
        project_id = create_project()
        ledger = NavLedgerService(session, clock)

        assert ledger.find_active_nav(project_id) is None
        with pytest.raises(NoNavAvailableError):
            ledger.get_active_nav(project_id)


class TestRevalueProject:

    def test_per_token_value_derived_from_total(
        self, session, clock, create_project, test_actor_id,
    ):
        project_id = create_project(holdings={uuid4(): Decimal("300"), uuid4(): Decimal("700")})

        record = NavLedgerService(session, clock).revalue_project(
            project_id, Decimal("10000"), NavSource.AUDITED, test_actor_id,
        )

        project = session.get(Project, project_id)
        assert project.nav == Decimal("10000")
        assert record.value_per_token == Decimal("10.0000000")

    def test_floor_price_without_outstanding_tokens(
        self, session, clock, create_project, test_actor_id,
    ):
        project_id = create_project()
        record = NavLedgerService(session, clock).revalue_project(
            project_id, Decimal("5000"), NavSource.MANUAL, test_actor_id,
        )
        assert record.value_per_token == Decimal("1.0000000")

    def test_negative_total_rejected(self, session, clock, create_project, test_actor_id):
        project_id = create_project()
        with pytest.raises(InvalidValueError):
            NavLedgerService(session, clock).revalue_project(
                project_id, Decimal("-1"), NavSource.MANUAL, test_actor_id,
            )
