"""
ReconciliationLedgerService -- divergence records awaiting manual resolution.

Responsibility:
    Persists ReconciliationRecords and lets an operator resolve them.
    A record means an irreversible external action succeeded while the
    paired local write failed or conflicted; the external reference,
    amount, and entity id are what the operator needs to repair the ledger.

Invariants enforced:
    - Records are never deleted; resolution is the only permitted change
      and happens once (db/immutability.py).
    - Only divergences are recorded here.  Validation and domain-state
      errors never produce a record.

Audit relevance:
    DIVERGENCE_RECORDED and DIVERGENCE_RESOLVED are critical audit events.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from settlement_kernel.exceptions import EntityNotFoundError, InvalidTransitionError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.reconciliation import (
    ReconciliationRecord,
    ReconciliationSeverity,
)
from settlement_kernel.services.base import BaseService
from settlement_kernel.utils.hashing import to_json_safe

logger = get_logger("services.reconciliation")

# Divergences are recorded by the system, not by a person.
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")


class ReconciliationLedgerService(BaseService):

    def record(
        self,
        error_type: str,
        related_entity_type: str,
        related_entity_id: UUID,
        message: str,
        external_tx_ref: str | None = None,
        amount: Decimal | None = None,
        details: dict[str, Any] | None = None,
        severity: ReconciliationSeverity = ReconciliationSeverity.CRITICAL,
    ) -> ReconciliationRecord:
        record = ReconciliationRecord(
            error_type=error_type,
            severity=severity,
            external_tx_ref=external_tx_ref,
            related_entity_type=related_entity_type,
            related_entity_id=related_entity_id,
            amount=amount,
            message=message,
            details=to_json_safe(details or {}),
            detected_at=self.clock.now(),
            resolved=False,
        )
        self.session.add(record)
        self.session.flush()

        self.auditor.record(
            entity_type=related_entity_type,
            entity_id=related_entity_id,
            action=AuditAction.DIVERGENCE_RECORDED,
            actor_id=SYSTEM_ACTOR_ID,
            detail={
                "reconciliation_id": record.id,
                "error_type": error_type,
                "severity": severity.value,
                "external_tx_ref": external_tx_ref,
                "amount": amount,
            },
        )

        logger.critical(
            "divergence_recorded",
            extra={
                "reconciliation_id": str(record.id),
                "error_type": error_type,
                "severity": severity.value,
                "external_tx_ref": external_tx_ref,
                "related_entity_type": related_entity_type,
                "related_entity_id": str(related_entity_id),
                "amount": str(amount) if amount is not None else None,
            },
        )
        return record

    def get(self, record_id: UUID, lock: bool = False) -> ReconciliationRecord:
        stmt = select(ReconciliationRecord).where(ReconciliationRecord.id == record_id)
        if lock:
            stmt = stmt.with_for_update()
        record = self.session.execute(stmt).scalar_one_or_none()
        if record is None:
            raise EntityNotFoundError("ReconciliationRecord", str(record_id))
        return record

    def resolve(
        self,
        record_id: UUID,
        resolved_by_id: UUID,
        resolution_notes: str,
    ) -> ReconciliationRecord:
        """Mark a record resolved after the operator has repaired local state."""
        record = self.get(record_id, lock=True)
        if record.resolved:
            raise InvalidTransitionError(
                "ReconciliationRecord", str(record_id), "resolved", "resolved",
            )

        record.resolved = True
        record.resolved_at = self.clock.now()
        record.resolved_by_id = resolved_by_id
        record.resolution_notes = resolution_notes
        self.session.flush()

        self.auditor.record(
            entity_type=record.related_entity_type,
            entity_id=record.related_entity_id,
            action=AuditAction.DIVERGENCE_RESOLVED,
            actor_id=resolved_by_id,
            previous_status="open",
            new_status="resolved",
            detail={
                "reconciliation_id": record.id,
                "external_tx_ref": record.external_tx_ref,
                "resolution_notes": resolution_notes,
            },
        )
        logger.warning(
            "divergence_resolved",
            extra={
                "reconciliation_id": str(record_id),
                "resolved_by_id": str(resolved_by_id),
            },
        )
        return record

    def list_unresolved(
        self,
        severity: ReconciliationSeverity | None = None,
    ) -> list[ReconciliationRecord]:
        stmt = select(ReconciliationRecord).where(ReconciliationRecord.resolved.is_(False))
        if severity is not None:
            stmt = stmt.where(ReconciliationRecord.severity == severity)
        return list(
            self.session.execute(stmt.order_by(ReconciliationRecord.detected_at)).scalars()
        )

    def for_entity(self, entity_type: str, entity_id: UUID) -> list[ReconciliationRecord]:
        return list(
            self.session.execute(
                select(ReconciliationRecord)
                .where(
                    ReconciliationRecord.related_entity_type == entity_type,
                    ReconciliationRecord.related_entity_id == entity_id,
                )
                .order_by(ReconciliationRecord.detected_at)
            ).scalars()
        )
