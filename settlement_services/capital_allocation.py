"""
Pool-to-project capital allocation flow.

    stage    Lock the pool reference row.  available = ledger balance
             - staged outflows - reserve floor; an amount above it is an
             InsufficientFundsError carrying the breakdown.  Requires a
             funded project wallet.  Creates (or re-stages) the
             CapitalAllocation row in EXTERNAL_PENDING, which makes its
             amount count against the pool until confirmed or released.
    execute  transfer(pool wallet -> project wallet, amount).
    confirm  Compare-and-swap on (EXTERNAL_PENDING, no external_tx_ref);
             record the pool OUTFLOW and add to project.capital_allocated.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_kernel.db.types import require_minor_units, to_network_amount
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import (
    AlreadySettledError,
    ConfirmationConflictError,
    EntityNotFoundError,
    InsufficientFundsError,
    InvalidValueError,
    ReconciliationRequiredError,
    SettlementPendingError,
    WalletNotReadyError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.capital_allocation import CapitalAllocation
from settlement_kernel.models.capital_pool import PoolDirection, PoolType
from settlement_kernel.models.project import Project
from settlement_kernel.models.project_wallet import ProjectWallet
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.pool_ledger import PoolLedgerService
from settlement_services.flow import ExternalOutcome, FlowContext, StagedIntent

logger = get_logger("services.capital_allocation")


def project_wallet_funded(session: Session, project_id: UUID) -> bool:
    wallet = session.execute(
        select(ProjectWallet).where(ProjectWallet.project_id == project_id)
    ).scalar_one_or_none()
    return wallet is not None and wallet.is_funded


class CapitalAllocationFlow:
    name = "capital_allocation"
    entity_type = "CapitalAllocation"

    def __init__(
        self,
        context: FlowContext,
        project_id: UUID,
        amount: Decimal,
        pool_type: PoolType = PoolType.LIQUIDITY,
        notes: str | None = None,
        allocation_id: UUID | None = None,
    ):
        self._ctx = context
        self.project_id = project_id
        self.amount = amount
        self.pool_type = pool_type
        self.notes = notes
        self.allocation_id = allocation_id

    def _restage(self, session: Session) -> CapitalAllocation:
        allocation = session.execute(
            select(CapitalAllocation)
            .where(CapitalAllocation.id == self.allocation_id)
            .with_for_update()
        ).scalar_one_or_none()
        if allocation is None:
            raise EntityNotFoundError(self.entity_type, str(self.allocation_id))

        allocation_id = str(allocation.id)
        if allocation.external_tx_ref is not None:
            raise AlreadySettledError(self.entity_type, allocation_id, allocation.external_tx_ref)
        if allocation.settlement_state == SettlementState.EXTERNAL_PENDING:
            raise SettlementPendingError(self.entity_type, allocation_id)
        if allocation.settlement_state == SettlementState.DIVERGENT:
            raise ReconciliationRequiredError(self.entity_type, allocation_id)
        if allocation.project_id != self.project_id:
            raise InvalidValueError("allocation_id", allocation_id, "belongs to another project")

        # A retry settles the staged row as recorded, not the caller's arguments.
        self.amount = allocation.amount
        self.pool_type = allocation.pool_type
        return allocation

    def stage(self, session: Session, actor_id: UUID) -> StagedIntent:
        project = session.execute(
            select(Project).where(Project.id == self.project_id).with_for_update()
        ).scalar_one_or_none()
        if project is None:
            raise EntityNotFoundError("Project", str(self.project_id))

        allocation = self._restage(session) if self.allocation_id is not None else None
        if self.amount <= 0:
            raise InvalidValueError("amount", self.amount, "must be positive")
        require_minor_units(self.amount, "amount")

        ledger = PoolLedgerService(session, self._ctx.clock)
        pool = ledger.get_pool(self.pool_type, lock=True)
        balance = ledger.balance(self.pool_type)
        pending = ledger.pending_outflows(self.pool_type)
        available = balance - pending - pool.min_reserve
        if self.amount > available:
            raise InsufficientFundsError(
                self.amount,
                [{
                    "source": self.pool_type.value,
                    "balance": str(balance),
                    "pending_outflows": str(pending),
                    "reserve_floor": str(pool.min_reserve),
                    "available": str(available),
                    "sufficient": False,
                }],
            )

        ratio = self._ctx.config.capital_allocation.large_allocation_ratio
        if self.amount > balance * ratio:
            logger.warning(
                "capital_allocation_large",
                extra={
                    "project_id": str(self.project_id),
                    "pool_type": self.pool_type.value,
                    "amount": str(self.amount),
                    "pool_balance": str(balance),
                    "ratio": str(ratio),
                },
            )

        wallet = session.execute(
            select(ProjectWallet).where(ProjectWallet.project_id == self.project_id)
        ).scalar_one_or_none()
        if wallet is None or not wallet.is_funded:
            raise WalletNotReadyError(str(self.project_id))

        if allocation is None:
            allocation = CapitalAllocation(
                project_id=self.project_id,
                pool_type=self.pool_type,
                amount=self.amount,
                notes=self.notes,
                created_by_id=actor_id,
            )
            session.add(allocation)
        allocation.settlement_state = SettlementState.EXTERNAL_PENDING
        session.flush()

        return StagedIntent(
            entity_id=allocation.id,
            guard=wallet.address,
            amount=self.amount,
            params={"pool_address": pool.wallet_address},
        )

    def execute(self, intent: StagedIntent) -> ExternalOutcome:
        receipt = self._ctx.network.transfer(
            intent.params["pool_address"],
            intent.guard,
            self._ctx.config.network.asset_code,
            to_network_amount(intent.amount),
            timeout=self._ctx.call_timeout,
        )
        return ExternalOutcome(external_ref=receipt.tx_ref)

    def _lock(self, session: Session, allocation_id: UUID) -> CapitalAllocation | None:
        return session.execute(
            select(CapitalAllocation).where(CapitalAllocation.id == allocation_id).with_for_update()
        ).scalar_one_or_none()

    def confirm(
        self,
        session: Session,
        intent: StagedIntent,
        outcome: ExternalOutcome,
        actor_id: UUID,
    ) -> dict[str, Any]:
        allocation = self._lock(session, intent.entity_id)
        entity_id = str(intent.entity_id)
        if allocation is None:
            raise ConfirmationConflictError(self.entity_type, entity_id, "id")
        if allocation.settlement_state != SettlementState.EXTERNAL_PENDING:
            raise ConfirmationConflictError(self.entity_type, entity_id, "settlement_state")
        if allocation.external_tx_ref is not None:
            raise ConfirmationConflictError(self.entity_type, entity_id, "external_tx_ref")

        allocation.external_tx_ref = outcome.external_ref
        allocation.confirmed_at = self._ctx.clock.now()
        allocation.settlement_state = SettlementState.CONFIRMED

        PoolLedgerService(session, self._ctx.clock).record(
            allocation.pool_type,
            PoolDirection.OUTFLOW,
            allocation.amount,
            source_reference=f"capital_allocation:{allocation.id}",
            project_id=allocation.project_id,
            external_tx_ref=outcome.external_ref,
            actor_id=actor_id,
        )

        project = session.execute(
            select(Project).where(Project.id == allocation.project_id).with_for_update()
        ).scalar_one()
        project.capital_allocated += allocation.amount
        session.flush()

        AuditorService(session, self._ctx.clock).record(
            entity_type=self.entity_type,
            entity_id=allocation.id,
            action=AuditAction.CAPITAL_ALLOCATED,
            actor_id=actor_id,
            previous_status=SettlementState.EXTERNAL_PENDING.value,
            new_status=SettlementState.CONFIRMED.value,
            detail={
                "project_id": allocation.project_id,
                "pool_type": allocation.pool_type.value,
                "amount": allocation.amount,
                "external_tx_ref": outcome.external_ref,
                "capital_allocated": project.capital_allocated,
            },
        )
        logger.info(
            "capital_allocated",
            extra={
                "allocation_id": entity_id,
                "project_id": str(allocation.project_id),
                "pool_type": allocation.pool_type.value,
                "amount": str(allocation.amount),
            },
        )
        return {
            "allocation_id": entity_id,
            "project_id": str(allocation.project_id),
            "pool_type": allocation.pool_type.value,
            "amount": str(allocation.amount),
            "external_tx_ref": outcome.external_ref,
            "capital_allocated": str(project.capital_allocated),
        }

    def release(self, session: Session, intent: StagedIntent) -> None:
        allocation = self._lock(session, intent.entity_id)
        if allocation is not None and allocation.settlement_state == SettlementState.EXTERNAL_PENDING:
            allocation.settlement_state = SettlementState.STAGED

    def mark_divergent(self, session: Session, intent: StagedIntent) -> None:
        allocation = self._lock(session, intent.entity_id)
        if allocation is not None:
            allocation.settlement_state = SettlementState.DIVERGENT
