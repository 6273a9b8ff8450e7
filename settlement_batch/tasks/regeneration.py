"""
Batch task: regeneration (revenue split).

One item per verified, unprocessed RevenueRecord.  Each item, inside the
executor's SAVEPOINT:

    1. Splits the record four ways by the project's override percentages,
       or the configured default (40 / 30 / 20 / 10).
    2. Token holders' share: per-holder RevenueAllocation rows weighted by
       tokens held, plus a distribution pool inflow.
    3. Liquidity share: per-provider RevenueAllocation rows (equal or
       contribution-weighted per configuration), plus a liquidity pool inflow.
    4. Treasury share: treasury pool inflow.
    5. Reinvestment share: distribution pool inflow tagged with the project,
       which is what makes it project cashflow.
    6. Marks the record processed.

A record whose split has a recipient bucket with nobody to receive it fails
and stays unprocessed for the next run.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_batch.domain.types import BatchItemStatus
from settlement_batch.tasks.base import BatchItemInput, BatchTaskResult
from settlement_config.schema import SettlementConfig
from settlement_engines.allocation import AllocationCalculator, AllocationResult, Claim
from settlement_kernel.db.types import decimal_from_db
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.types import LiquidityProviderSplit, RevenueDestination
from settlement_kernel.exceptions import NoEligibleHoldersError, SettlementKernelError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.capital_pool import (
    ContributionStatus,
    LiquidityContribution,
    PoolDirection,
    PoolType,
)
from settlement_kernel.models.project import Project, TokenHolding
from settlement_kernel.models.revenue import (
    AllocationPolicy,
    RecipientType,
    RevenueAllocation,
    RevenueRecord,
    RevenueStatus,
)
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.pool_ledger import PoolLedgerService
from settlement_kernel.services.reconciliation_ledger import SYSTEM_ACTOR_ID

logger = get_logger("batch.regeneration")


def _actor(parameters: dict[str, Any]) -> UUID:
    actor = parameters.get("actor_id")
    return UUID(actor) if actor else SYSTEM_ACTOR_ID


class RegenerationTask:
    """Split verified revenue across holders and capital pools."""

    def __init__(self, config: SettlementConfig, clock: Clock | None = None):
        self._config = config
        self._clock = clock
        self._calculator = AllocationCalculator()

    @property
    def task_type(self) -> str:
        return "regeneration.revenue_split"

    @property
    def description(self) -> str:
        return "Split verified project revenue across holders and capital pools"

    def prepare_items(
        self,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> tuple[BatchItemInput, ...]:
        stmt = (
            select(RevenueRecord)
            .where(
                RevenueRecord.status == RevenueStatus.VERIFIED,
                RevenueRecord.processed.is_(False),
            )
            .order_by(RevenueRecord.created_at, RevenueRecord.id)
            .limit(parameters.get("limit", self._config.regeneration.batch_size))
        )
        if parameters.get("project_id"):
            stmt = stmt.where(RevenueRecord.project_id == UUID(parameters["project_id"]))

        records = session.execute(stmt).scalars().all()
        return tuple(
            BatchItemInput(
                item_index=i,
                item_key=str(record.id),
                payload={"revenue_record_id": str(record.id)},
            )
            for i, record in enumerate(records)
        )

    def execute_item(
        self,
        item: BatchItemInput,
        parameters: dict[str, Any],
        session: Session,
        as_of: datetime,
    ) -> BatchTaskResult:
        record = session.execute(
            select(RevenueRecord)
            .where(RevenueRecord.id == UUID(item.payload["revenue_record_id"]))
            .with_for_update()
        ).scalar_one_or_none()
        if record is None or record.processed or record.status != RevenueStatus.VERIFIED:
            return BatchTaskResult(
                status=BatchItemStatus.SKIPPED,
                result_data={"reason": "not verified or already processed"},
            )

        try:
            data = self._process(session, record, _actor(parameters), as_of)
        except SettlementKernelError as exc:
            logger.warning(
                "revenue_record_not_processed",
                extra={
                    "revenue_record_id": str(record.id),
                    "code": exc.code,
                    "error": str(exc),
                },
            )
            return BatchTaskResult(
                status=BatchItemStatus.FAILED,
                error_code=exc.code,
                error_message=str(exc),
            )
        return BatchTaskResult(status=BatchItemStatus.SUCCEEDED, result_data=data)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _percentages(self, project: Project) -> dict[RevenueDestination, Decimal]:
        if project.has_split_override:
            return {
                RevenueDestination.TOKEN_HOLDERS: project.split_token_holders,
                RevenueDestination.LIQUIDITY_POOL: project.split_liquidity_pool,
                RevenueDestination.TREASURY: project.split_treasury,
                RevenueDestination.PROJECT_REINVESTMENT: project.split_project_reinvestment,
            }
        return self._config.revenue_split.as_percentages()

    def _holder_allocation(
        self, session: Session, project_id: UUID, amount: Decimal,
    ) -> AllocationResult:
        holdings = session.execute(
            select(TokenHolding).where(
                TokenHolding.project_id == project_id,
                TokenHolding.tokens_held > 0,
            )
        ).scalars().all()
        if not holdings:
            raise NoEligibleHoldersError(f"token holders of project {project_id}")
        return self._calculator.allocate_pro_rata(
            total=amount,
            claims=[Claim(h.holder_id, h.tokens_held) for h in holdings],
        )

    def _provider_allocation(self, session: Session, amount: Decimal) -> AllocationResult:
        rows = session.execute(
            select(LiquidityContribution.provider_id, func.sum(LiquidityContribution.amount))
            .where(LiquidityContribution.status == ContributionStatus.APPROVED)
            .group_by(LiquidityContribution.provider_id)
        ).all()
        contributions = {
            provider_id: decimal_from_db(total)
            for provider_id, total in rows
            if total and total > 0
        }
        if not contributions:
            raise NoEligibleHoldersError("liquidity providers")

        if self._config.liquidity_provider_split == LiquidityProviderSplit.CONTRIBUTION_WEIGHTED:
            return self._calculator.allocate_pro_rata(
                total=amount,
                claims=[Claim(p, total) for p, total in contributions.items()],
            )
        return self._calculator.allocate_equal(total=amount, holder_ids=list(contributions))

    def _process(
        self,
        session: Session,
        record: RevenueRecord,
        actor_id: UUID,
        as_of: datetime,
    ) -> dict[str, Any]:
        project = session.execute(
            select(Project).where(Project.id == record.project_id).with_for_update()
        ).scalar_one()

        split = self._calculator.split_by_percentages(
            total=record.amount, percentages=self._percentages(project),
        ).as_mapping()
        holder_share = split[RevenueDestination.TOKEN_HOLDERS]
        lp_share = split[RevenueDestination.LIQUIDITY_POOL]
        treasury_share = split[RevenueDestination.TREASURY]
        reinvest_share = split[RevenueDestination.PROJECT_REINVESTMENT]

        rows: list[RevenueAllocation] = []
        if holder_share > 0:
            for line in self._holder_allocation(session, project.id, holder_share).lines:
                rows.append(RevenueAllocation(
                    revenue_record_id=record.id,
                    project_id=project.id,
                    recipient_type=RecipientType.TOKEN_HOLDER,
                    recipient_id=line.holder_id,
                    weight=line.weight,
                    amount=line.amount,
                    policy=AllocationPolicy.TOKEN_WEIGHTED,
                ))
        if lp_share > 0:
            lp_policy = (
                AllocationPolicy.CONTRIBUTION_WEIGHTED
                if self._config.liquidity_provider_split == LiquidityProviderSplit.CONTRIBUTION_WEIGHTED
                else AllocationPolicy.EQUAL
            )
            for line in self._provider_allocation(session, lp_share).lines:
                rows.append(RevenueAllocation(
                    revenue_record_id=record.id,
                    project_id=project.id,
                    recipient_type=RecipientType.LIQUIDITY_PROVIDER,
                    recipient_id=line.holder_id,
                    weight=line.weight,
                    amount=line.amount,
                    policy=lp_policy,
                ))
        session.add_all(rows)

        ledger = PoolLedgerService(session, self._clock)
        reference = f"revenue:{record.id}"
        inflows = (
            (PoolType.DISTRIBUTION, holder_share, None, "token_holders"),
            (PoolType.LIQUIDITY, lp_share, None, "liquidity_pool"),
            (PoolType.TREASURY, treasury_share, None, "treasury"),
            (PoolType.DISTRIBUTION, reinvest_share, project.id, "project_reinvestment"),
        )
        for pool_type, amount, project_id, bucket in inflows:
            if amount > 0:
                ledger.record(
                    pool_type,
                    PoolDirection.INFLOW,
                    amount,
                    source_reference=f"{reference}:{bucket}",
                    project_id=project_id,
                    actor_id=actor_id,
                )

        record.processed = True
        record.processed_at = as_of
        record.updated_by_id = actor_id
        session.flush()

        detail = {
            "project_id": project.id,
            "amount": record.amount,
            "token_holders": holder_share,
            "liquidity_pool": lp_share,
            "treasury": treasury_share,
            "project_reinvestment": reinvest_share,
            "recipients": len(rows),
            "split_override": project.has_split_override,
        }
        AuditorService(session, self._clock).record(
            entity_type="RevenueRecord",
            entity_id=record.id,
            action=AuditAction.REVENUE_PROCESSED,
            actor_id=actor_id,
            detail=detail,
        )
        logger.info(
            "revenue_record_processed",
            extra={
                "revenue_record_id": str(record.id),
                "project_id": str(project.id),
                "amount": str(record.amount),
                "recipients": len(rows),
            },
        )
        return {
            "revenue_record_id": str(record.id),
            "project_id": str(project.id),
            "amount": str(record.amount),
            "token_holders": str(holder_share),
            "liquidity_pool": str(lp_share),
            "treasury": str(treasury_share),
            "project_reinvestment": str(reinvest_share),
            "recipients": len(rows),
        }
