"""
settlement_services.settlement_orchestrator -- three-stage local/external settlement.

Responsibility:
    Runs every operation that pairs a durable local state change with one
    irreversible call on the asset network: project wallet provisioning,
    milestone disbursement, pool-to-project capital allocation, and
    redemption payout.  Each is a SettlementFlow; the orchestrator owns the
    transactions between the stages and the divergence path.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  Also the DI
    point for the flows: network client, secret store, configuration, and
    clock are wired here and handed to each flow.

Stages:
    1. stage    Own short transaction.  The flow row-locks its entity,
                short-circuits when the external reference is already on
                record, validates preconditions, and moves the entity to
                EXTERNAL_PENDING.  Commits before any network call.
    2. execute  No transaction open.  The single irreversible call.
                A definite failure returns the entity to STAGED (own
                transaction) and yields a retryable failure result.  A
                timeout leaves it EXTERNAL_PENDING: the outcome is unknown
                and the call is never resent automatically.
    3. confirm  Own transaction.  Compare-and-swap on the staged guard
                value; writes the confirmation.  Any failure here is a
                divergence: a critical ReconciliationRecord is committed
                through a separate session, the entity is marked DIVERGENT,
                and a partial-success result is returned.

Invariants enforced:
    - No row lock is held across the network call.
    - Validation and domain-state errors never produce a reconciliation
      record.
    - A divergence is persisted before run() returns, or logged at CRITICAL
      if even the secondary write fails.

Usage:
    orchestrator = SettlementOrchestrator(
        session_factory=factory,
        network=network,
        secret_store=secrets,
        config=get_active_config(),
    )
    result = orchestrator.disburse_milestone(milestone_id, actor_id)
    result.to_dict()
"""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from settlement_config.schema import SettlementConfig
from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.domain.results import OperationResult
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.exceptions import (
    EntityNotFoundError,
    InvalidTransitionError,
    NetworkTimeoutError,
    SettlementKernelError,
)
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.capital_allocation import CapitalAllocation
from settlement_kernel.models.capital_pool import PoolType
from settlement_kernel.models.redemption import RedemptionRequest
from settlement_kernel.network.contract import AssetNetworkClient, SecretStore
from settlement_kernel.services.auditor_service import AuditorService
from settlement_services.capital_allocation import CapitalAllocationFlow, project_wallet_funded
from settlement_services.flow import (
    ExternalOutcome,
    FlowContext,
    SettlementFlow,
    StagedIntent,
)
from settlement_services.milestone_disbursement import MilestoneDisbursementFlow
from settlement_services.reconciliation import record_divergence
from settlement_services.redemption_service import RedemptionPayoutFlow
from settlement_services.wallet_provisioning import WalletProvisioningFlow

logger = get_logger("services.settlement")


def _error_data(exc: SettlementKernelError) -> dict[str, Any]:
    """Structured attributes of a typed error, for the failure result."""
    return {
        key: value
        for key, value in vars(exc).items()
        if not key.startswith("_") and key != "message"
    }


class SettlementOrchestrator:
    """
    Runs settlement flows and builds them with their collaborators.

    Non-goals:
        - Does NOT retry.  Retryable failures are returned to the caller,
          which owns backoff.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        network: AssetNetworkClient,
        secret_store: SecretStore,
        config: SettlementConfig,
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self.context = FlowContext(
            network=network,
            secret_store=secret_store,
            config=config,
            clock=self._clock,
        )

    # -----------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------

    def provision_wallet(self, project_id: UUID, actor_id: UUID) -> OperationResult:
        return self.run(WalletProvisioningFlow(self.context, project_id), actor_id)

    def disburse_milestone(self, milestone_id: UUID, actor_id: UUID) -> OperationResult:
        return self.run(MilestoneDisbursementFlow(self.context, milestone_id), actor_id)

    def allocate_capital(
        self,
        project_id: UUID,
        amount: Decimal,
        actor_id: UUID,
        pool_type: PoolType = PoolType.LIQUIDITY,
        notes: str | None = None,
        allocation_id: UUID | None = None,
    ) -> OperationResult:
        """
        Move capital from a pool to the project wallet.

        The project wallet is provisioned first when it is not funded yet;
        a failed provisioning is returned as is.  Pass ``allocation_id`` to
        retry an allocation that was released back to STAGED.
        """
        with transaction_scope(self._session_factory) as session:
            funded = project_wallet_funded(session, project_id)
        if not funded:
            logger.info(
                "capital_allocation_wallet_provisioning",
                extra={"project_id": str(project_id)},
            )
            provisioned = self.provision_wallet(project_id, actor_id)
            if not provisioned.success:
                return provisioned

        flow = CapitalAllocationFlow(
            self.context,
            project_id=project_id,
            amount=amount,
            pool_type=pool_type,
            notes=notes,
            allocation_id=allocation_id,
        )
        return self.run(flow, actor_id)

    def process_redemption(self, redemption_id: UUID, actor_id: UUID) -> OperationResult:
        return self.run(RedemptionPayoutFlow(self.context, redemption_id), actor_id)

    # -----------------------------------------------------------------
    # Operator release of timed-out transfers
    # -----------------------------------------------------------------

    def release_allocation(self, allocation_id: UUID, actor_id: UUID, notes: str) -> OperationResult:
        """
        Return an EXTERNAL_PENDING allocation to STAGED.

        For use after an operator has confirmed on the network that the
        transfer did not happen.  Retry with allocate_capital(allocation_id=...).
        """
        return self._release(
            CapitalAllocation,
            allocation_id,
            actor_id,
            notes,
            lambda row: CapitalAllocationFlow(
                self.context,
                project_id=row.project_id,
                amount=row.amount,
                pool_type=row.pool_type,
                allocation_id=row.id,
            ),
        )

    def release_redemption(self, redemption_id: UUID, actor_id: UUID, notes: str) -> OperationResult:
        """Return an EXTERNAL_PENDING payout to a PENDING request; its tokens stay locked."""
        return self._release(
            RedemptionRequest,
            redemption_id,
            actor_id,
            notes,
            lambda row: RedemptionPayoutFlow(self.context, row.id),
        )

    def _release(
        self,
        model: type[CapitalAllocation] | type[RedemptionRequest],
        entity_id: UUID,
        actor_id: UUID,
        notes: str,
        build_flow: Callable[[Any], SettlementFlow],
    ) -> OperationResult:
        entity_type = model.__name__
        try:
            with transaction_scope(self._session_factory) as session:
                row = session.get(model, entity_id, with_for_update=True)
                if row is None:
                    raise EntityNotFoundError(entity_type, str(entity_id))
                if row.settlement_state != SettlementState.EXTERNAL_PENDING:
                    raise InvalidTransitionError(
                        entity_type,
                        str(entity_id),
                        row.settlement_state.value,
                        SettlementState.STAGED.value,
                    )
                build_flow(row).release(session, StagedIntent(entity_id=entity_id, guard=""))
                AuditorService(session, self._clock).record(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=AuditAction.SETTLEMENT_RELEASED,
                    actor_id=actor_id,
                    previous_status=SettlementState.EXTERNAL_PENDING.value,
                    new_status=SettlementState.STAGED.value,
                    detail={"notes": notes},
                )
        except SettlementKernelError as exc:
            return OperationResult.fail(exc, data=_error_data(exc))

        logger.warning(
            "settlement_released",
            extra={"entity_type": entity_type, "entity_id": str(entity_id), "actor_id": str(actor_id)},
        )
        return OperationResult.ok({"entity_id": str(entity_id), "state": "staged"})

    # -----------------------------------------------------------------
    # Engine
    # -----------------------------------------------------------------

    def run(self, flow: SettlementFlow, actor_id: UUID) -> OperationResult:
        with LogContext.bind(flow=flow.name, actor_id=str(actor_id)):
            return self._run(flow, actor_id)

    def _run(self, flow: SettlementFlow, actor_id: UUID) -> OperationResult:
        # Stage 1
        try:
            with transaction_scope(self._session_factory) as session:
                staged = flow.stage(session, actor_id)
        except SettlementKernelError as exc:
            logger.info(
                "settlement_stage_rejected",
                extra={"code": exc.code, "entity_type": flow.entity_type, "error": str(exc)},
            )
            return OperationResult.fail(exc, data=_error_data(exc))

        if isinstance(staged, OperationResult):
            logger.info(
                "settlement_short_circuit",
                extra={"entity_type": flow.entity_type, "success": staged.success},
            )
            return staged

        with LogContext.bind(entity_id=str(staged.entity_id)):
            logger.info(
                "settlement_staged",
                extra={
                    "entity_type": flow.entity_type,
                    "amount": str(staged.amount) if staged.amount is not None else None,
                },
            )

            # Stage 2
            try:
                outcome = flow.execute(staged)
            except NetworkTimeoutError as exc:
                logger.error(
                    "settlement_outcome_unknown",
                    extra={"entity_type": flow.entity_type, "operation": exc.operation},
                )
                return OperationResult.fail(
                    exc, data={"entity_id": str(staged.entity_id), "state": "external_pending"},
                )
            except SettlementKernelError as exc:
                logger.warning(
                    "settlement_external_failed",
                    extra={"entity_type": flow.entity_type, "code": exc.code, "error": str(exc)},
                )
                with transaction_scope(self._session_factory) as session:
                    flow.release(session, staged)
                return OperationResult.fail(
                    exc, data={"entity_id": str(staged.entity_id), "state": "staged"},
                )

            logger.info(
                "settlement_external_succeeded",
                extra={"entity_type": flow.entity_type, "external_ref": outcome.external_ref},
            )

            # Stage 3
            try:
                with transaction_scope(self._session_factory) as session:
                    data = flow.confirm(session, staged, outcome, actor_id)
            except Exception as exc:
                return self._diverge(flow, staged, outcome, exc)

            logger.info(
                "settlement_confirmed",
                extra={"entity_type": flow.entity_type, "external_ref": outcome.external_ref},
            )
            return OperationResult.ok(data)

    def _diverge(
        self,
        flow: SettlementFlow,
        staged: StagedIntent,
        outcome: ExternalOutcome,
        exc: Exception,
    ) -> OperationResult:
        error_type = getattr(exc, "code", type(exc).__name__)
        reconciliation_id = record_divergence(
            self._session_factory,
            self._clock,
            error_type=f"{flow.name}.{error_type}",
            related_entity_type=flow.entity_type,
            related_entity_id=staged.entity_id,
            message=str(exc),
            external_tx_ref=outcome.external_ref,
            amount=staged.amount,
            details={
                "flow": flow.name,
                "guard": staged.guard,
                "exception_type": type(exc).__name__,
                "external": dict(outcome.details),
            },
        )

        try:
            with transaction_scope(self._session_factory) as session:
                flow.mark_divergent(session, staged)
        except Exception:
            logger.error(
                "divergent_state_not_persisted",
                exc_info=True,
                extra={"entity_type": flow.entity_type, "external_ref": outcome.external_ref},
            )

        logger.critical(
            "settlement_divergence",
            extra={
                "entity_type": flow.entity_type,
                "external_ref": outcome.external_ref,
                "reconciliation_id": str(reconciliation_id) if reconciliation_id else None,
                "error": str(exc),
            },
        )
        return OperationResult.partial(
            external_ref=outcome.external_ref,
            reconciliation_id=str(reconciliation_id) if reconciliation_id else None,
            data={"entity_id": str(staged.entity_id), "error": str(exc)},
        )
