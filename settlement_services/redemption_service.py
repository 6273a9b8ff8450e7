"""
Redemptions: request intake and the payout flow.

RedemptionService (session-bound, caller owns the transaction)
    create_request   Prices the request once against the active NAV record
                     and locks the requested tokens.  No active NAV is a
                     hard block, never a default price.
    reject_request   Pending requests only; unlocks the tokens.

RedemptionPayoutFlow (run by the SettlementOrchestrator)
    stage    Lock request and holding; check the tokens are still locked for
             the request; resolve the funding source in configured
             priority order.
    execute  transfer(funding pool wallet -> destination, redemption_value).
    confirm  Record the pool outflow, burn the holder's locked tokens,
             reduce tokens outstanding, mark completed.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_engines.pricing import redemption_value, token_price
from settlement_kernel.db.types import to_network_amount
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.domain.types import FundingSource
from settlement_kernel.exceptions import (
    AlreadySettledError,
    ConfirmationConflictError,
    EntityNotFoundError,
    InsufficientTokensError,
    InvalidTransitionError,
    InvalidValueError,
    ReconciliationRequiredError,
    SettlementPendingError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.capital_pool import PoolDirection
from settlement_kernel.models.project import Project, TokenHolding
from settlement_kernel.models.redemption import RedemptionRequest, RedemptionStatus
from settlement_kernel.services.auditor_service import AuditEntry, AuditorService
from settlement_kernel.services.base import BaseService
from settlement_kernel.services.nav_ledger import NavLedgerService
from settlement_kernel.services.pool_ledger import FUNDING_SOURCE_POOL, PoolLedgerService
from settlement_services.flow import ExternalOutcome, FlowContext, StagedIntent
from settlement_services.funding_resolver import FundingSourceResolver

logger = get_logger("services.redemption")


def _lock_holding(session: Session, project_id: UUID, holder_id: UUID) -> TokenHolding | None:
    return session.execute(
        select(TokenHolding)
        .where(TokenHolding.project_id == project_id, TokenHolding.holder_id == holder_id)
        .with_for_update()
    ).scalar_one_or_none()


def _lock_request(session: Session, redemption_id: UUID) -> RedemptionRequest | None:
    return session.execute(
        select(RedemptionRequest).where(RedemptionRequest.id == redemption_id).with_for_update()
    ).scalar_one_or_none()


class RedemptionService(BaseService):

    def get(self, redemption_id: UUID, lock: bool = False) -> RedemptionRequest:
        if lock:
            request = _lock_request(self.session, redemption_id)
        else:
            request = self.session.get(RedemptionRequest, redemption_id)
        if request is None:
            raise EntityNotFoundError("RedemptionRequest", str(redemption_id))
        return request

    def list_pending(self, project_id: UUID | None = None) -> list[RedemptionRequest]:
        stmt = select(RedemptionRequest).where(
            RedemptionRequest.status == RedemptionStatus.PENDING
        )
        if project_id is not None:
            stmt = stmt.where(RedemptionRequest.project_id == project_id)
        return list(self.session.execute(stmt.order_by(RedemptionRequest.created_at)).scalars())

    def create_request(
        self,
        project_id: UUID,
        holder_id: UUID,
        tokens_amount: Decimal,
        destination_address: str,
        actor_id: UUID,
    ) -> RedemptionRequest:
        """
        Record a redemption request priced at the active NAV.

        Raises:
            NoNavAvailableError: The project has no active NAV record.
            InsufficientTokensError: The holder's liquid tokens do not cover
                the request.
        """
        if tokens_amount <= 0:
            raise InvalidValueError("tokens_amount", tokens_amount, "must be positive")
        if not destination_address:
            raise InvalidValueError("destination_address", destination_address, "is required")

        nav = NavLedgerService(self.session, self.clock).get_active_nav(project_id)

        holding = _lock_holding(self.session, project_id, holder_id)
        liquid = holding.liquid_tokens if holding is not None else Decimal("0")
        if liquid < tokens_amount:
            raise InsufficientTokensError(str(holder_id), tokens_amount, liquid)
        holding.locked_tokens += tokens_amount

        value = redemption_value(tokens=tokens_amount, nav_per_token=nav.value_per_token)
        request = RedemptionRequest(
            project_id=project_id,
            holder_id=holder_id,
            tokens_amount=tokens_amount,
            nav_per_token=nav.value_per_token,
            redemption_value=value,
            destination_address=destination_address,
            status=RedemptionStatus.PENDING,
            settlement_state=SettlementState.IDLE,
            created_by_id=actor_id,
        )
        self.session.add(request)
        self.session.flush()

        self._audit_informational(AuditEntry(
            entity_type="RedemptionRequest",
            entity_id=request.id,
            action=AuditAction.REDEMPTION_REQUESTED,
            actor_id=actor_id,
            new_status=RedemptionStatus.PENDING.value,
            detail={
                "project_id": project_id,
                "holder_id": holder_id,
                "tokens_amount": tokens_amount,
                "nav_per_token": nav.value_per_token,
                "nav_version": nav.version,
                "redemption_value": value,
            },
        ))
        logger.info(
            "redemption_requested",
            extra={
                "redemption_id": str(request.id),
                "project_id": str(project_id),
                "tokens_amount": str(tokens_amount),
                "redemption_value": str(value),
            },
        )
        return request

    def reject_request(self, redemption_id: UUID, actor_id: UUID, reason: str) -> RedemptionRequest:
        if not reason:
            raise InvalidValueError("reason", reason, "a rejection reason is required")

        request = self.get(redemption_id, lock=True)
        if request.settlement_state == SettlementState.EXTERNAL_PENDING:
            raise SettlementPendingError("RedemptionRequest", str(request.id))
        if request.status != RedemptionStatus.PENDING:
            raise InvalidTransitionError(
                "RedemptionRequest", str(request.id),
                request.status.value, RedemptionStatus.REJECTED.value,
            )

        holding = _lock_holding(self.session, request.project_id, request.holder_id)
        if holding is not None:
            holding.locked_tokens -= request.tokens_amount
        request.status = RedemptionStatus.REJECTED
        request.rejection_reason = reason
        self.session.flush()

        self.auditor.record(
            entity_type="RedemptionRequest",
            entity_id=request.id,
            action=AuditAction.REDEMPTION_REJECTED,
            actor_id=actor_id,
            previous_status=RedemptionStatus.PENDING.value,
            new_status=RedemptionStatus.REJECTED.value,
            detail={"reason": reason},
        )
        logger.info("redemption_rejected", extra={"redemption_id": str(request.id)})
        return request


class RedemptionPayoutFlow:
    name = "redemption_payout"
    entity_type = "RedemptionRequest"

    def __init__(self, context: FlowContext, redemption_id: UUID):
        self._ctx = context
        self.redemption_id = redemption_id

    def stage(self, session: Session, actor_id: UUID) -> StagedIntent:
        request = _lock_request(session, self.redemption_id)
        if request is None:
            raise EntityNotFoundError(self.entity_type, str(self.redemption_id))

        request_id = str(request.id)
        if request.external_tx_ref is not None:
            raise AlreadySettledError(self.entity_type, request_id, request.external_tx_ref)
        if request.settlement_state == SettlementState.EXTERNAL_PENDING:
            raise SettlementPendingError(self.entity_type, request_id)
        if request.settlement_state == SettlementState.DIVERGENT:
            raise ReconciliationRequiredError(self.entity_type, request_id)
        if request.status != RedemptionStatus.PENDING:
            raise InvalidTransitionError(
                self.entity_type, request_id,
                request.status.value, RedemptionStatus.PROCESSING.value,
            )

        holding = _lock_holding(session, request.project_id, request.holder_id)
        claimed = holding.locked_tokens if holding is not None else Decimal("0")
        if claimed < request.tokens_amount:
            raise InsufficientTokensError(str(request.holder_id), request.tokens_amount, claimed)

        decision = FundingSourceResolver(
            session, self._ctx.config.funding_priority, self._ctx.clock,
        ).resolve(request.project_id, request.redemption_value)
        pool = PoolLedgerService(session, self._ctx.clock).get_pool(
            FUNDING_SOURCE_POOL[decision.source],
        )

        request.funding_source = decision.source.value
        request.status = RedemptionStatus.PROCESSING
        request.settlement_state = SettlementState.EXTERNAL_PENDING
        session.flush()

        return StagedIntent(
            entity_id=request.id,
            guard=decision.source.value,
            amount=request.redemption_value,
            params={
                "pool_address": pool.wallet_address,
                "destination_address": request.destination_address,
                "breakdown": decision.breakdown,
            },
        )

    def execute(self, intent: StagedIntent) -> ExternalOutcome:
        receipt = self._ctx.network.transfer(
            intent.params["pool_address"],
            intent.params["destination_address"],
            self._ctx.config.network.asset_code,
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
        request = _lock_request(session, intent.entity_id)
        entity_id = str(intent.entity_id)
        if request is None:
            raise ConfirmationConflictError(self.entity_type, entity_id, "id")
        if request.settlement_state != SettlementState.EXTERNAL_PENDING:
            raise ConfirmationConflictError(self.entity_type, entity_id, "settlement_state")
        if request.external_tx_ref is not None:
            raise ConfirmationConflictError(self.entity_type, entity_id, "external_tx_ref")
        if request.funding_source != intent.guard:
            raise ConfirmationConflictError(self.entity_type, entity_id, "funding_source")

        source = FundingSource(request.funding_source)
        PoolLedgerService(session, self._ctx.clock).record(
            FUNDING_SOURCE_POOL[source],
            PoolDirection.OUTFLOW,
            request.redemption_value,
            source_reference=f"redemption:{request.id}",
            project_id=request.project_id if source == FundingSource.PROJECT_CASHFLOW else None,
            external_tx_ref=outcome.external_ref,
            actor_id=actor_id,
        )

        holding = _lock_holding(session, request.project_id, request.holder_id)
        holding.tokens_held -= request.tokens_amount
        holding.locked_tokens -= request.tokens_amount

        project = session.execute(
            select(Project).where(Project.id == request.project_id).with_for_update()
        ).scalar_one()
        project.tokens_outstanding -= request.tokens_amount
        project.token_price = token_price(
            nav=project.nav, tokens_outstanding=project.tokens_outstanding,
        )

        request.external_tx_ref = outcome.external_ref
        request.status = RedemptionStatus.COMPLETED
        request.processed_at = self._ctx.clock.now()
        request.settlement_state = SettlementState.CONFIRMED
        session.flush()

        AuditorService(session, self._ctx.clock).record(
            entity_type=self.entity_type,
            entity_id=request.id,
            action=AuditAction.REDEMPTION_COMPLETED,
            actor_id=actor_id,
            previous_status=RedemptionStatus.PROCESSING.value,
            new_status=RedemptionStatus.COMPLETED.value,
            detail={
                "project_id": request.project_id,
                "holder_id": request.holder_id,
                "tokens_amount": request.tokens_amount,
                "redemption_value": request.redemption_value,
                "funding_source": request.funding_source,
                "external_tx_ref": outcome.external_ref,
            },
        )
        logger.info(
            "redemption_completed",
            extra={
                "redemption_id": entity_id,
                "funding_source": request.funding_source,
                "redemption_value": str(request.redemption_value),
            },
        )
        return {
            "redemption_id": entity_id,
            "funding_source": request.funding_source,
            "redemption_value": str(request.redemption_value),
            "tokens_amount": str(request.tokens_amount),
            "external_tx_ref": outcome.external_ref,
        }

    def release(self, session: Session, intent: StagedIntent) -> None:
        request = _lock_request(session, intent.entity_id)
        if request is None or request.settlement_state != SettlementState.EXTERNAL_PENDING:
            return
        request.funding_source = None
        request.status = RedemptionStatus.PENDING
        request.settlement_state = SettlementState.STAGED

    def mark_divergent(self, session: Session, intent: StagedIntent) -> None:
        request = _lock_request(session, intent.entity_id)
        if request is not None:
            request.settlement_state = SettlementState.DIVERGENT
