"""
PoolLedgerService -- append-only capital pool ledger.

Responsibility:
    Appends CapitalPoolTransaction rows and derives balances from them.
    Pool balances are never stored: balance(pool) = SUM(sign(direction) *
    amount) over the pool's log, so concurrent writers only contend on the
    insert, never on a read-modify-write of a counter.

Invariants enforced:
    - Amounts on the log are strictly positive; direction carries the sign.
    - Rows are insert-only (db/immutability.py).
    - Balance checks that precede a transfer lock the CapitalPool row and
      subtract staged-but-unconfirmed outflows (capital allocations and
      redemptions in EXTERNAL_PENDING), so two concurrent stages cannot both
      spend the same balance.

Failure modes:
    - InvalidValueError on a non-positive amount.
    - EntityNotFoundError when a pool row was never seeded.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, func, select

from settlement_kernel.db.types import decimal_from_db
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.domain.types import FundingSource
from settlement_kernel.exceptions import EntityNotFoundError, InvalidValueError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.capital_allocation import CapitalAllocation
from settlement_kernel.models.capital_pool import (
    CapitalPool,
    CapitalPoolTransaction,
    PoolDirection,
    PoolType,
)
from settlement_kernel.models.redemption import RedemptionRequest
from settlement_kernel.services.base import BaseService

logger = get_logger("services.pool_ledger")

ZERO = Decimal("0")

_SIGNED_AMOUNT = case(
    (CapitalPoolTransaction.direction == PoolDirection.INFLOW, CapitalPoolTransaction.amount),
    else_=-CapitalPoolTransaction.amount,
)

# Which pool a redemption's funding_source draws from.
FUNDING_SOURCE_POOL: dict[FundingSource, PoolType] = {
    FundingSource.PROJECT_CASHFLOW: PoolType.DISTRIBUTION,
    FundingSource.TREASURY: PoolType.TREASURY,
    FundingSource.LIQUIDITY_POOL: PoolType.LIQUIDITY,
}


class PoolLedgerService(BaseService):

    def ensure_pool(
        self,
        pool_type: PoolType,
        wallet_address: str,
        min_reserve: Decimal = ZERO,
    ) -> CapitalPool:
        """Create the pool reference row if missing.  Existing rows are left as they are."""
        pool = self.session.execute(
            select(CapitalPool).where(CapitalPool.pool_type == pool_type)
        ).scalar_one_or_none()
        if pool is None:
            pool = CapitalPool(
                pool_type=pool_type,
                wallet_address=wallet_address,
                min_reserve=min_reserve,
            )
            self.session.add(pool)
            self.session.flush()
            logger.info(
                "capital_pool_registered",
                extra={
                    "pool_type": pool_type.value,
                    "min_reserve": str(min_reserve),
                },
            )
        return pool

    def get_pool(self, pool_type: PoolType, lock: bool = False) -> CapitalPool:
        stmt = select(CapitalPool).where(CapitalPool.pool_type == pool_type)
        if lock:
            stmt = stmt.with_for_update()
        pool = self.session.execute(stmt).scalar_one_or_none()
        if pool is None:
            raise EntityNotFoundError("CapitalPool", pool_type.value)
        return pool

    def record(
        self,
        pool_type: PoolType,
        direction: PoolDirection,
        amount: Decimal,
        source_reference: str,
        project_id: UUID | None = None,
        external_tx_ref: str | None = None,
        actor_id: UUID | None = None,
    ) -> CapitalPoolTransaction:
        if amount <= 0:
            raise InvalidValueError("amount", amount, "pool transactions must be positive")

        txn = CapitalPoolTransaction(
            pool_type=pool_type,
            direction=direction,
            amount=amount,
            source_reference=source_reference,
            project_id=project_id,
            external_tx_ref=external_tx_ref,
            recorded_at=self.clock.now(),
            recorded_by_id=actor_id,
        )
        self.session.add(txn)
        self.session.flush()

        logger.info(
            "pool_transaction_recorded",
            extra={
                "pool_type": pool_type.value,
                "direction": direction.value,
                "amount": str(amount),
                "source_reference": source_reference,
                "project_id": str(project_id) if project_id else None,
            },
        )
        return txn

    def balance(self, pool_type: PoolType, project_id: UUID | None = None) -> Decimal:
        """
        Signed sum over the pool's log.

        With ``project_id`` only that project's rows count; this is how the
        project-level cashflow pool is read out of the distribution pool.
        """
        stmt = select(func.coalesce(func.sum(_SIGNED_AMOUNT), 0)).where(
            CapitalPoolTransaction.pool_type == pool_type
        )
        if project_id is not None:
            stmt = stmt.where(CapitalPoolTransaction.project_id == project_id)
        return decimal_from_db(self.session.execute(stmt).scalar_one())

    def balances(self) -> dict[PoolType, Decimal]:
        return {pool_type: self.balance(pool_type) for pool_type in PoolType}

    def pending_outflows(self, pool_type: PoolType, project_id: UUID | None = None) -> Decimal:
        """Amounts staged for transfer out of the pool and not yet confirmed."""
        allocations = ZERO
        if project_id is None:
            allocations = decimal_from_db(
                self.session.execute(
                    select(func.coalesce(func.sum(CapitalAllocation.amount), 0)).where(
                        CapitalAllocation.pool_type == pool_type,
                        CapitalAllocation.settlement_state == SettlementState.EXTERNAL_PENDING,
                    )
                ).scalar_one()
            )

        sources = [s.value for s, p in FUNDING_SOURCE_POOL.items() if p == pool_type]
        stmt = select(func.coalesce(func.sum(RedemptionRequest.redemption_value), 0)).where(
            RedemptionRequest.funding_source.in_(sources),
            RedemptionRequest.settlement_state == SettlementState.EXTERNAL_PENDING,
        )
        if project_id is not None:
            stmt = stmt.where(RedemptionRequest.project_id == project_id)
        redemptions = decimal_from_db(self.session.execute(stmt).scalar_one())

        return allocations + redemptions

    def available(self, pool_type: PoolType, project_id: UUID | None = None) -> Decimal:
        """Balance minus staged outflows.  Reserve floors are applied by callers."""
        return self.balance(pool_type, project_id) - self.pending_outflows(pool_type, project_id)

    def history(self, pool_type: PoolType, limit: int = 100) -> list[CapitalPoolTransaction]:
        return list(
            self.session.execute(
                select(CapitalPoolTransaction)
                .where(CapitalPoolTransaction.pool_type == pool_type)
                .order_by(CapitalPoolTransaction.recorded_at.desc())
                .limit(limit)
            ).scalars()
        )
