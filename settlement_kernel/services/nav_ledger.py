"""
NavLedgerService -- versioned, single-active NAV history per project.

Responsibility:
    Records per-token NAV values, answers "what is the active NAV", and
    revalues a project's total NAV (which re-derives the per-token value).

Architecture position:
    Kernel > Services.  Called by admin actions, the milestone disbursement
    confirm step, and redemption pricing.

Invariants enforced:
    - After any sequence of record_nav calls, exactly one record per project
      has is_superseded = false.  Supersede and insert run in the caller's
      transaction under the project row lock; the supersede is flushed
      before the insert so the partial unique index never sees two active
      rows and a reader never sees zero (the transaction is atomic).
    - version is allocated as max + 1 under the same project lock.

Failure modes:
    - InvalidValueError if value <= 0.
    - EntityNotFoundError for an unknown project.
    - NoNavAvailableError from get_active_nav when the project has none.

Audit relevance:
    NAV_RECORDED is a critical audit event written in the same transaction.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from settlement_engines.pricing import token_price
from settlement_kernel.exceptions import (
    EntityNotFoundError,
    InvalidValueError,
    NoNavAvailableError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.nav_record import NavRecord, NavSource
from settlement_kernel.models.project import Project
from settlement_kernel.services.base import BaseService

logger = get_logger("services.nav_ledger")


class NavLedgerService(BaseService):

    def _lock_project(self, project_id: UUID) -> Project:
        project = self.session.execute(
            select(Project).where(Project.id == project_id).with_for_update()
        ).scalar_one_or_none()
        if project is None:
            raise EntityNotFoundError("Project", str(project_id))
        return project

    def record_nav(
        self,
        project_id: UUID,
        value: Decimal,
        source: NavSource,
        actor_id: UUID,
        notes: str | None = None,
        effective_at: datetime | None = None,
    ) -> NavRecord:
        """
        Supersede the active record and insert ``value`` as the new active one.

        Both steps happen in the caller's transaction; neither is visible to
        other transactions until it commits.
        """
        if value <= 0:
            raise InvalidValueError("value_per_token", value, "must be positive")

        project = self._lock_project(project_id)

        active = self.session.execute(
            select(NavRecord)
            .where(
                NavRecord.project_id == project_id,
                NavRecord.is_superseded.is_(False),
            )
            .with_for_update()
        ).scalars().all()

        previous_value = active[0].value_per_token if active else None
        for record in active:
            record.is_superseded = True
        self.session.flush()

        last_version = self.session.execute(
            select(func.max(NavRecord.version)).where(NavRecord.project_id == project_id)
        ).scalar_one_or_none()

        record = NavRecord(
            project_id=project_id,
            version=(last_version or 0) + 1,
            value_per_token=value,
            source=source,
            effective_at=effective_at or self.clock.now(),
            is_superseded=False,
            notes=notes,
            recorded_by_id=actor_id,
        )
        self.session.add(record)
        project.token_price = value
        self.session.flush()

        self.auditor.record(
            entity_type="Project",
            entity_id=project_id,
            action=AuditAction.NAV_RECORDED,
            actor_id=actor_id,
            detail={
                "nav_record_id": record.id,
                "version": record.version,
                "value_per_token": value,
                "previous_value_per_token": previous_value,
                "source": source.value,
                "superseded_count": len(active),
                "notes": notes,
            },
        )

        logger.info(
            "nav_recorded",
            extra={
                "project_id": str(project_id),
                "version": record.version,
                "value_per_token": str(value),
                "source": source.value,
                "superseded_count": len(active),
            },
        )
        return record

    def revalue_project(
        self,
        project_id: UUID,
        total_nav: Decimal,
        source: NavSource,
        actor_id: UUID,
        notes: str | None = None,
    ) -> NavRecord:
        """
        Set the project's total NAV and record the derived per-token value.

        Per-token value = total_nav / tokens_outstanding at 7 dp, or the
        floor price when nothing is outstanding.
        """
        if total_nav < 0:
            raise InvalidValueError("total_nav", total_nav, "must not be negative")

        project = self._lock_project(project_id)
        previous_nav = project.nav
        project.nav = total_nav
        per_token = token_price(nav=total_nav, tokens_outstanding=project.tokens_outstanding)

        logger.info(
            "project_revalued",
            extra={
                "project_id": str(project_id),
                "previous_nav": str(previous_nav),
                "nav": str(total_nav),
                "tokens_outstanding": str(project.tokens_outstanding),
                "value_per_token": str(per_token),
            },
        )
        return self.record_nav(project_id, per_token, source, actor_id, notes=notes)

    def find_active_nav(self, project_id: UUID) -> NavRecord | None:
        return self.session.execute(
            select(NavRecord)
            .where(
                NavRecord.project_id == project_id,
                NavRecord.is_superseded.is_(False),
            )
            .order_by(NavRecord.effective_at.desc(), NavRecord.version.desc())
            .limit(1)
        ).scalar_one_or_none()

    def get_active_nav(self, project_id: UUID) -> NavRecord:
        """
        The single non-superseded record.

        Raises:
            NoNavAvailableError: No active record.  Callers pricing a
                token-denominated operation must treat this as a hard block.
        """
        record = self.find_active_nav(project_id)
        if record is None:
            raise NoNavAvailableError(str(project_id))
        return record

    def get_nav_history(self, project_id: UUID) -> list[NavRecord]:
        """All records for the project, newest version first."""
        return list(
            self.session.execute(
                select(NavRecord)
                .where(NavRecord.project_id == project_id)
                .order_by(NavRecord.version.desc())
            ).scalars()
        )
