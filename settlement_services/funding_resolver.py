"""
FundingSourceResolver -- which pool pays a redemption.

Builds funding candidates from the pool ledger in configured priority order
and hands them to the pure selection engine.  The project cashflow source is
the project's own share of the distribution pool and has no reserve floor;
the shared pools use the floor on their reference row.

Pool reference rows are locked for the duration of the caller's transaction
so two concurrent payouts cannot both see the same available balance.
"""

from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from settlement_engines.funding import FundingCandidate, FundingDecision, select_funding_source
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.types import FundingSource
from settlement_kernel.logging_config import get_logger
from settlement_kernel.services.pool_ledger import FUNDING_SOURCE_POOL, PoolLedgerService

logger = get_logger("services.funding_resolver")


class FundingSourceResolver:

    def __init__(
        self,
        session: Session,
        priority: Sequence[FundingSource],
        clock: Clock | None = None,
    ):
        self._ledger = PoolLedgerService(session, clock)
        self._priority = tuple(priority)

    def candidates(self, project_id: UUID) -> list[FundingCandidate]:
        result = []
        for source in self._priority:
            pool = self._ledger.get_pool(FUNDING_SOURCE_POOL[source], lock=True)
            if source == FundingSource.PROJECT_CASHFLOW:
                balance = self._ledger.available(pool.pool_type, project_id)
                reserve = Decimal("0")
            else:
                balance = self._ledger.available(pool.pool_type)
                reserve = pool.min_reserve
            result.append(FundingCandidate(source=source, balance=balance, reserve_floor=reserve))
        return result

    def resolve(self, project_id: UUID, required: Decimal) -> FundingDecision:
        """
        First source in priority order that covers ``required``.

        Raises:
            InsufficientFundsError: No single source covers the amount.
        """
        decision = select_funding_source(
            required=required, candidates=self.candidates(project_id),
        )
        logger.info(
            "funding_source_selected",
            extra={
                "project_id": str(project_id),
                "source": decision.source.value,
                "required": str(required),
                "available": str(decision.available),
            },
        )
        return decision
