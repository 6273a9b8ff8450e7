"""
Module: settlement_kernel.models.capital_pool
Responsibility: Platform capital pools, their append-only transaction log,
    and liquidity-provider contributions.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - A pool's balance is never stored.  It is the signed sum of its
      CapitalPoolTransaction rows (services/pool_ledger.py).
    - CapitalPoolTransaction rows are insert-only (db/immutability.py).
    - CapitalPool rows carry reference data only (wallet address, minimum
      reserve) and serve as the row-lock anchor for balance checks.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column


class PoolType(str, Enum):
    TREASURY = "treasury"
    LIQUIDITY = "liquidity"
    DISTRIBUTION = "distribution"


class PoolDirection(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"
    ALLOCATION = "allocation"
    FEE = "fee"
    BUYBACK = "buyback"

    @property
    def sign(self) -> int:
        match self:
            case PoolDirection.INFLOW:
                return 1
            case (
                PoolDirection.OUTFLOW
                | PoolDirection.ALLOCATION
                | PoolDirection.FEE
                | PoolDirection.BUYBACK
            ):
                return -1


class ContributionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    WITHDRAWN = "withdrawn"


class CapitalPool(Base):
    __tablename__ = "capital_pools"

    pool_type: Mapped[PoolType] = mapped_column(
        enum_column(PoolType), nullable=False, unique=True,
    )
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    min_reserve: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    def __repr__(self) -> str:
        return f"<CapitalPool {self.pool_type.value} reserve={self.min_reserve}>"


class CapitalPoolTransaction(Base):
    __tablename__ = "capital_pool_transactions"
    __table_args__ = (
        Index("idx_pool_txn_pool", "pool_type"),
        Index("idx_pool_txn_project", "pool_type", "project_id"),
        Index("idx_pool_txn_source", "source_reference"),
    )

    pool_type: Mapped[PoolType] = mapped_column(enum_column(PoolType), nullable=False)
    direction: Mapped[PoolDirection] = mapped_column(
        enum_column(PoolDirection), nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    source_reference: Mapped[str] = mapped_column(String(200), nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=True,
    )
    external_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)
    recorded_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount * self.direction.sign


class LiquidityContribution(TrackedBase):
    """Capital contributed to the liquidity pool by a provider."""

    __tablename__ = "liquidity_contributions"
    __table_args__ = (Index("idx_contribution_provider", "provider_id"),)

    provider_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[ContributionStatus] = mapped_column(
        enum_column(ContributionStatus),
        default=ContributionStatus.APPROVED,
        nullable=False,
    )
