"""
Milestone disbursement flow.

An approved milestone whose fiat bank transfer has been attached is settled
by burning the same amount of the settlement asset from the project wallet
back to the issuer, then reducing project NAV by the burned amount.

    stage    Lock milestone and project.  An external_tx_ref on record means
             the burn already happened: AlreadySettledError, no network
             call.  Preconditions are checked in this order: amount within
             NAV, tokens outstanding, a positive token price after the burn,
             bank transfer attached, wallet funded.
    execute  transfer(project wallet -> issuer, target_amount).
    confirm  Compare-and-swap on (EXTERNAL_PENDING, no external_tx_ref,
             same bank reference); record the burn, mark DISBURSED, revalue
             the project at nav - amount.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engines.pricing import post_burn_nav, token_price
from settlement_kernel.db.types import to_network_amount
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import (
    AlreadySettledError,
    ConfirmationConflictError,
    DegenerateTokenPriceError,
    EntityNotFoundError,
    ExceedsNavError,
    InvalidTransitionError,
    MissingBankTransferError,
    OutstandingTokensRequiredError,
    ReconciliationRequiredError,
    SettlementPendingError,
    WalletNotReadyError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.milestone import Milestone, MilestoneStatus
from settlement_kernel.models.nav_record import NavSource
from settlement_kernel.models.project import Project
from settlement_kernel.models.project_wallet import ProjectWallet
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.nav_ledger import NavLedgerService
from settlement_services.flow import ExternalOutcome, FlowContext, StagedIntent

logger = get_logger("services.milestone_disbursement")


class MilestoneDisbursementFlow:
    name = "milestone_disbursement"
    entity_type = "Milestone"

    def __init__(self, context: FlowContext, milestone_id: UUID):
        self._ctx = context
        self.milestone_id = milestone_id

    def _lock(self, session: Session) -> Milestone | None:
        return session.execute(
            select(Milestone).where(Milestone.id == self.milestone_id).with_for_update()
        ).scalar_one_or_none()

    def stage(self, session: Session, actor_id: UUID) -> StagedIntent:
        milestone = self._lock(session)
        if milestone is None:
            raise EntityNotFoundError(self.entity_type, str(self.milestone_id))

        milestone_id = str(milestone.id)
        if milestone.external_tx_ref is not None:
            raise AlreadySettledError(self.entity_type, milestone_id, milestone.external_tx_ref)
        if milestone.settlement_state == SettlementState.EXTERNAL_PENDING:
            raise SettlementPendingError(self.entity_type, milestone_id)
        if milestone.settlement_state == SettlementState.DIVERGENT:
            raise ReconciliationRequiredError(self.entity_type, milestone_id)
        if milestone.status != MilestoneStatus.APPROVED:
            raise InvalidTransitionError(
                self.entity_type, milestone_id,
                milestone.status.value, MilestoneStatus.DISBURSED.value,
            )

        project = session.execute(
            select(Project).where(Project.id == milestone.project_id).with_for_update()
        ).scalar_one()
        amount = milestone.target_amount
        if amount > project.nav:
            raise ExceedsNavError(str(project.id), amount, project.nav)
        if project.tokens_outstanding <= 0:
            raise OutstandingTokensRequiredError(str(project.id))
        price_after = token_price(
            nav=post_burn_nav(nav=project.nav, burn_amount=amount),
            tokens_outstanding=project.tokens_outstanding,
        )
        if price_after <= 0:
            raise DegenerateTokenPriceError(str(project.id), amount, price_after)
        if not milestone.bank_transfer_reference:
            raise MissingBankTransferError(milestone_id)

        wallet = session.execute(
            select(ProjectWallet).where(ProjectWallet.project_id == project.id)
        ).scalar_one_or_none()
        if wallet is None or not wallet.is_funded:
            raise WalletNotReadyError(str(project.id))

        milestone.settlement_state = SettlementState.EXTERNAL_PENDING
        session.flush()
        return StagedIntent(
            entity_id=milestone.id,
            guard=milestone.bank_transfer_reference,
            amount=amount,
            params={"project_id": project.id, "wallet_address": wallet.address},
        )

    def execute(self, intent: StagedIntent) -> ExternalOutcome:
        network_config = self._ctx.config.network
        receipt = self._ctx.network.transfer(
            intent.params["wallet_address"],
            network_config.issuer,
            network_config.asset_code,
            to_network_amount(intent.amount),
            timeout=self._ctx.call_timeout,
        )
        return ExternalOutcome(external_ref=receipt.tx_ref)

    def confirm(
        self,
        session: Session,
        intent: StagedIntent,
        outcome: ExternalOutcome,
        actor_id: UUID,
    ) -> dict[str, Any]:
        milestone = self._lock(session)
        entity_id = str(intent.entity_id)
        if milestone is None:
            raise ConfirmationConflictError(self.entity_type, entity_id, "id")
        if milestone.settlement_state != SettlementState.EXTERNAL_PENDING:
            raise ConfirmationConflictError(self.entity_type, entity_id, "settlement_state")
        if milestone.external_tx_ref is not None:
            raise ConfirmationConflictError(self.entity_type, entity_id, "external_tx_ref")
        if milestone.bank_transfer_reference != intent.guard:
            raise ConfirmationConflictError(self.entity_type, entity_id, "bank_transfer_reference")

        now = self._ctx.clock.now()
        milestone.external_tx_ref = outcome.external_ref
        milestone.burned_amount = intent.amount
        milestone.status = MilestoneStatus.DISBURSED
        milestone.disbursed_at = now
        milestone.settlement_state = SettlementState.CONFIRMED
        session.flush()

        project = session.get(Project, milestone.project_id)
        previous_nav = project.nav
        new_nav = post_burn_nav(nav=previous_nav, burn_amount=intent.amount)
        nav_record = NavLedgerService(session, self._ctx.clock).revalue_project(
            project.id,
            new_nav,
            NavSource.FORMULA,
            actor_id,
            notes=f"milestone #{milestone.sequence_number} disbursed",
        )

        AuditorService(session, self._ctx.clock).record(
            entity_type=self.entity_type,
            entity_id=milestone.id,
            action=AuditAction.MILESTONE_DISBURSED,
            actor_id=actor_id,
            previous_status=MilestoneStatus.APPROVED.value,
            new_status=MilestoneStatus.DISBURSED.value,
            detail={
                "project_id": project.id,
                "amount": intent.amount,
                "bank_transfer_reference": milestone.bank_transfer_reference,
                "external_tx_ref": outcome.external_ref,
                "previous_nav": previous_nav,
                "new_nav": new_nav,
            },
        )
        logger.info(
            "milestone_disbursed",
            extra={
                "milestone_id": entity_id,
                "project_id": str(project.id),
                "amount": str(intent.amount),
                "new_nav": str(new_nav),
            },
        )
        return {
            "milestone_id": entity_id,
            "external_tx_ref": outcome.external_ref,
            "burned_amount": str(intent.amount),
            "previous_nav": str(previous_nav),
            "new_nav": str(new_nav),
            "nav_per_token": str(nav_record.value_per_token),
        }

    def release(self, session: Session, intent: StagedIntent) -> None:
        milestone = self._lock(session)
        if milestone is not None and milestone.settlement_state == SettlementState.EXTERNAL_PENDING:
            milestone.settlement_state = SettlementState.STAGED

    def mark_divergent(self, session: Session, intent: StagedIntent) -> None:
        milestone = self._lock(session)
        if milestone is not None:
            milestone.settlement_state = SettlementState.DIVERGENT
