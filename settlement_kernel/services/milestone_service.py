"""
MilestoneService -- milestone lifecycle up to (not including) disbursement.

Responsibility:
    Creation, draft edits, submission, review, bank transfer attachment, and
    operator release of a stuck disbursement.  The disbursement itself (burn
    on the asset network, NAV reduction) is the milestone flow of the
    settlement orchestrator in settlement_services.

Invariants enforced:
    - sequence_number = max + 1 per project, allocated under the project row
      lock.  Project.total_milestones counts live milestones.
    - Status only advances along MILESTONE_TRANSITIONS.
    - Only draft milestones may be edited or deleted.
    - A bank transfer reference may be attached to an approved milestone only.

Audit relevance:
    Creation, edits, deletion, and submission are informational.  Approval,
    rejection, bank transfer attachment, and release are critical.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from settlement_kernel.db.types import require_minor_units
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import (
    EntityNotFoundError,
    InvalidTransitionError,
    InvalidValueError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.milestone import (
    MILESTONE_TRANSITIONS,
    Milestone,
    MilestoneStatus,
)
from settlement_kernel.models.project import Project
from settlement_kernel.services.auditor_service import AuditEntry
from settlement_kernel.services.base import BaseService

logger = get_logger("services.milestone")

_EDITABLE_FIELDS = ("title", "description", "target_amount")


class MilestoneService(BaseService):

    def get(self, milestone_id: UUID, lock: bool = False) -> Milestone:
        stmt = select(Milestone).where(Milestone.id == milestone_id)
        if lock:
            stmt = stmt.with_for_update()
        milestone = self.session.execute(stmt).scalar_one_or_none()
        if milestone is None:
            raise EntityNotFoundError("Milestone", str(milestone_id))
        return milestone

    def list_for_project(self, project_id: UUID) -> list[Milestone]:
        return list(
            self.session.execute(
                select(Milestone)
                .where(Milestone.project_id == project_id)
                .order_by(Milestone.sequence_number)
            ).scalars()
        )

    def _transition(self, milestone: Milestone, to_status: MilestoneStatus) -> MilestoneStatus:
        if to_status not in MILESTONE_TRANSITIONS[milestone.status]:
            raise InvalidTransitionError(
                "Milestone", str(milestone.id), milestone.status.value, to_status.value,
            )
        previous = milestone.status
        milestone.status = to_status
        return previous

    def _require_draft(self, milestone: Milestone, action: str) -> None:
        if milestone.status != MilestoneStatus.DRAFT:
            raise InvalidTransitionError(
                "Milestone", str(milestone.id), milestone.status.value, action,
            )

    def create(
        self,
        project_id: UUID,
        title: str,
        target_amount: Decimal,
        actor_id: UUID,
        description: str | None = None,
    ) -> Milestone:
        if target_amount <= 0:
            raise InvalidValueError("target_amount", target_amount, "must be positive")
        require_minor_units(target_amount, "target_amount")

        project = self.session.execute(
            select(Project).where(Project.id == project_id).with_for_update()
        ).scalar_one_or_none()
        if project is None:
            raise EntityNotFoundError("Project", str(project_id))

        last_sequence = self.session.execute(
            select(func.max(Milestone.sequence_number)).where(
                Milestone.project_id == project_id
            )
        ).scalar_one_or_none()

        milestone = Milestone(
            project_id=project_id,
            sequence_number=(last_sequence or 0) + 1,
            title=title,
            description=description,
            target_amount=target_amount,
            status=MilestoneStatus.DRAFT,
            settlement_state=SettlementState.IDLE,
            created_by_id=actor_id,
        )
        self.session.add(milestone)
        project.total_milestones += 1
        self.session.flush()

        self._audit_informational(AuditEntry(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.MILESTONE_CREATED,
            actor_id=actor_id,
            new_status=MilestoneStatus.DRAFT.value,
            detail={
                "project_id": project_id,
                "sequence_number": milestone.sequence_number,
                "target_amount": target_amount,
            },
        ))
        logger.info(
            "milestone_created",
            extra={
                "milestone_id": str(milestone.id),
                "project_id": str(project_id),
                "sequence_number": milestone.sequence_number,
            },
        )
        return milestone

    def update(self, milestone_id: UUID, actor_id: UUID, **changes) -> Milestone:
        """Edit title, description, or target_amount of a draft milestone."""
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise InvalidValueError(
                "fields", ", ".join(sorted(unknown)), "not editable on a milestone",
            )
        target = changes.get("target_amount")
        if target is not None and target <= 0:
            raise InvalidValueError("target_amount", target, "must be positive")
        if target is not None:
            require_minor_units(target, "target_amount")

        milestone = self.get(milestone_id, lock=True)
        self._require_draft(milestone, "update")

        for name, value in changes.items():
            setattr(milestone, name, value)
        milestone.updated_by_id = actor_id
        self.session.flush()

        self._audit_informational(AuditEntry(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.MILESTONE_UPDATED,
            actor_id=actor_id,
            detail={"changed": changes},
        ))
        return milestone

    def delete(self, milestone_id: UUID, actor_id: UUID) -> None:
        milestone = self.get(milestone_id, lock=True)
        self._require_draft(milestone, "delete")

        project = self.session.execute(
            select(Project).where(Project.id == milestone.project_id).with_for_update()
        ).scalar_one()
        project.total_milestones -= 1
        self.session.delete(milestone)
        self.session.flush()

        self._audit_informational(AuditEntry(
            entity_type="Milestone",
            entity_id=milestone_id,
            action=AuditAction.MILESTONE_DELETED,
            actor_id=actor_id,
            previous_status=MilestoneStatus.DRAFT.value,
            detail={"project_id": milestone.project_id},
        ))
        logger.info("milestone_deleted", extra={"milestone_id": str(milestone_id)})

    def submit(self, milestone_id: UUID, actor_id: UUID) -> Milestone:
        milestone = self.get(milestone_id, lock=True)
        previous = self._transition(milestone, MilestoneStatus.SUBMITTED)
        milestone.submitted_at = self.clock.now()
        milestone.updated_by_id = actor_id
        self.session.flush()

        self._audit_informational(AuditEntry(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.MILESTONE_SUBMITTED,
            actor_id=actor_id,
            previous_status=previous.value,
            new_status=milestone.status.value,
        ))
        logger.info("milestone_submitted", extra={"milestone_id": str(milestone.id)})
        return milestone

    def approve(self, milestone_id: UUID, actor_id: UUID) -> Milestone:
        milestone = self.get(milestone_id, lock=True)
        previous = self._transition(milestone, MilestoneStatus.APPROVED)
        milestone.approved_at = self.clock.now()
        milestone.approved_by_id = actor_id
        milestone.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.MILESTONE_APPROVED,
            actor_id=actor_id,
            previous_status=previous.value,
            new_status=milestone.status.value,
            detail={"target_amount": milestone.target_amount},
        )
        logger.info("milestone_approved", extra={"milestone_id": str(milestone.id)})
        return milestone

    def reject(self, milestone_id: UUID, actor_id: UUID, reason: str) -> Milestone:
        if not reason or not reason.strip():
            raise InvalidValueError("reason", reason, "a rejection reason is required")

        milestone = self.get(milestone_id, lock=True)
        previous = self._transition(milestone, MilestoneStatus.REJECTED)
        milestone.rejection_reason = reason
        milestone.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.MILESTONE_REJECTED,
            actor_id=actor_id,
            previous_status=previous.value,
            new_status=milestone.status.value,
            detail={"reason": reason},
        )
        logger.info("milestone_rejected", extra={"milestone_id": str(milestone.id)})
        return milestone

    def attach_bank_transfer(
        self,
        milestone_id: UUID,
        reference: str,
        amount: Decimal,
        actor_id: UUID,
    ) -> Milestone:
        if not reference:
            raise InvalidValueError("bank_transfer_reference", reference, "is required")
        if amount <= 0:
            raise InvalidValueError("bank_transfer_amount", amount, "must be positive")
        require_minor_units(amount, "bank_transfer_amount")

        milestone = self.get(milestone_id, lock=True)
        if milestone.status != MilestoneStatus.APPROVED:
            raise InvalidTransitionError(
                "Milestone", str(milestone.id), milestone.status.value, "bank_transfer",
            )

        previous_reference = milestone.bank_transfer_reference
        milestone.bank_transfer_reference = reference
        milestone.bank_transfer_amount = amount
        milestone.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.BANK_TRANSFER_ATTACHED,
            actor_id=actor_id,
            detail={
                "reference": reference,
                "amount": amount,
                "previous_reference": previous_reference,
            },
        )
        logger.info(
            "bank_transfer_attached",
            extra={"milestone_id": str(milestone.id), "amount": str(amount)},
        )
        return milestone

    def release_pending(self, milestone_id: UUID, actor_id: UUID, notes: str) -> Milestone:
        """
        Return an EXTERNAL_PENDING disbursement to STAGED.

        For use after an operator has confirmed on the network that the
        burn did not happen (e.g. the call timed out before submission).
        The next disburse call will send it again.
        """
        milestone = self.get(milestone_id, lock=True)
        if milestone.settlement_state != SettlementState.EXTERNAL_PENDING:
            raise InvalidTransitionError(
                "Milestone",
                str(milestone.id),
                milestone.settlement_state.value,
                SettlementState.STAGED.value,
            )
        milestone.settlement_state = SettlementState.STAGED
        milestone.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            entity_type="Milestone",
            entity_id=milestone.id,
            action=AuditAction.SETTLEMENT_RELEASED,
            actor_id=actor_id,
            previous_status=SettlementState.EXTERNAL_PENDING.value,
            new_status=SettlementState.STAGED.value,
            detail={"notes": notes},
        )
        logger.warning(
            "settlement_released",
            extra={"milestone_id": str(milestone.id), "actor_id": str(actor_id)},
        )
        return milestone
