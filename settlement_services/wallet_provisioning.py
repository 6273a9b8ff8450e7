"""
Project wallet provisioning flow.

    stage    Lock the project; generate and persist an address (secret goes
             to the secret store, only its reference to the database).
             A wallet already funded short-circuits with success.
    execute  Create the account with the starting reserve, then establish
             the trustline to the settlement asset.  "Already exists" is
             success for both, so re-running from EXTERNAL_PENDING is safe.
    confirm  Compare-and-swap on the staged address; set funded_at.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_kernel.db.types import to_network_amount
from settlement_kernel.domain.results import OperationResult
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import (
    ConfirmationConflictError,
    EntityNotFoundError,
    ReconciliationRequiredError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.project import Project
from settlement_kernel.models.project_wallet import ProjectWallet
from settlement_kernel.services.auditor_service import AuditorService
from settlement_services.flow import ExternalOutcome, FlowContext, StagedIntent

logger = get_logger("services.wallet_provisioning")


class WalletProvisioningFlow:
    name = "wallet_provisioning"
    entity_type = "ProjectWallet"

    def __init__(self, context: FlowContext, project_id: UUID):
        self._ctx = context
        self.project_id = project_id

    def _lock_wallet(self, session: Session) -> ProjectWallet | None:
        return session.execute(
            select(ProjectWallet)
            .where(ProjectWallet.project_id == self.project_id)
            .with_for_update()
        ).scalar_one_or_none()

    def stage(self, session: Session, actor_id: UUID) -> StagedIntent | OperationResult:
        project = session.execute(
            select(Project).where(Project.id == self.project_id).with_for_update()
        ).scalar_one_or_none()
        if project is None:
            raise EntityNotFoundError("Project", str(self.project_id))

        wallet = self._lock_wallet(session)
        if wallet is not None and wallet.is_funded:
            return OperationResult.ok({
                "wallet_id": str(wallet.id),
                "address": wallet.address,
                "already_funded": True,
            })
        if wallet is not None and wallet.settlement_state == SettlementState.DIVERGENT:
            raise ReconciliationRequiredError(self.entity_type, str(wallet.id))

        if wallet is None:
            keypair = self._ctx.network.generate_keypair()
            wallet = ProjectWallet(
                project_id=self.project_id,
                address=keypair.address,
                secret_material_ref=self._ctx.secret_store.put(keypair.secret),
                settlement_state=SettlementState.STAGED,
                staged_at=self._ctx.clock.now(),
            )
            session.add(wallet)
            session.flush()
            AuditorService(session, self._ctx.clock).record(
                entity_type=self.entity_type,
                entity_id=wallet.id,
                action=AuditAction.WALLET_STAGED,
                actor_id=actor_id,
                new_status=SettlementState.STAGED.value,
                detail={"project_id": self.project_id, "address": wallet.address},
            )
            logger.info(
                "wallet_staged",
                extra={"project_id": str(self.project_id), "address": wallet.address},
            )

        wallet.settlement_state = SettlementState.EXTERNAL_PENDING
        session.flush()
        return StagedIntent(entity_id=wallet.id, guard=wallet.address)

    def execute(self, intent: StagedIntent) -> ExternalOutcome:
        network_config = self._ctx.config.network
        account = self._ctx.network.create_account(
            intent.guard,
            to_network_amount(network_config.starting_reserve),
            timeout=self._ctx.call_timeout,
        )
        trustline = self._ctx.network.establish_trustline(
            intent.guard,
            network_config.asset_code,
            network_config.issuer,
            timeout=self._ctx.call_timeout,
        )
        return ExternalOutcome(
            external_ref=trustline.tx_ref or account.tx_ref or intent.guard,
            details={
                "account_tx_ref": account.tx_ref,
                "account_already_existed": account.already_exists,
                "trustline_tx_ref": trustline.tx_ref,
                "trustline_already_existed": trustline.already_exists,
            },
        )

    def confirm(
        self,
        session: Session,
        intent: StagedIntent,
        outcome: ExternalOutcome,
        actor_id: UUID,
    ) -> dict[str, Any]:
        wallet = session.execute(
            select(ProjectWallet).where(ProjectWallet.id == intent.entity_id).with_for_update()
        ).scalar_one_or_none()
        if wallet is None or wallet.address != intent.guard:
            raise ConfirmationConflictError(self.entity_type, str(intent.entity_id), "address")
        if wallet.settlement_state != SettlementState.EXTERNAL_PENDING:
            raise ConfirmationConflictError(
                self.entity_type, str(intent.entity_id), "settlement_state",
            )

        wallet.funded_at = self._ctx.clock.now()
        wallet.account_tx_ref = outcome.details.get("account_tx_ref")
        wallet.trustline_tx_ref = outcome.details.get("trustline_tx_ref")
        wallet.settlement_state = SettlementState.CONFIRMED
        session.flush()

        AuditorService(session, self._ctx.clock).record(
            entity_type=self.entity_type,
            entity_id=wallet.id,
            action=AuditAction.WALLET_FUNDED,
            actor_id=actor_id,
            previous_status=SettlementState.EXTERNAL_PENDING.value,
            new_status=SettlementState.CONFIRMED.value,
            detail={
                "project_id": self.project_id,
                "address": wallet.address,
                **outcome.details,
            },
        )
        logger.info(
            "wallet_funded",
            extra={"project_id": str(self.project_id), "address": wallet.address},
        )
        return {
            "wallet_id": str(wallet.id),
            "address": wallet.address,
            "funded_at": wallet.funded_at.isoformat(),
            "account_tx_ref": wallet.account_tx_ref,
            "trustline_tx_ref": wallet.trustline_tx_ref,
        }

    def release(self, session: Session, intent: StagedIntent) -> None:
        wallet = session.get(ProjectWallet, intent.entity_id, with_for_update=True)
        if wallet is not None and wallet.settlement_state == SettlementState.EXTERNAL_PENDING:
            wallet.settlement_state = SettlementState.STAGED

    def mark_divergent(self, session: Session, intent: StagedIntent) -> None:
        wallet = session.get(ProjectWallet, intent.entity_id, with_for_update=True)
        if wallet is not None:
            wallet.settlement_state = SettlementState.DIVERGENT
