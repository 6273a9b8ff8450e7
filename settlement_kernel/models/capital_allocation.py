"""
Module: settlement_kernel.models.capital_allocation
Responsibility: Pool-to-project capital transfers.
Architecture position: Kernel > Models.

A row is created at stage time in EXTERNAL_PENDING; while it stays there its
amount counts against the pool's available balance.  Confirmation records
the pool outflow and sets external_tx_ref.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column
from settlement_kernel.domain.settlement import SettlementState
from settlement_kernel.models.capital_pool import PoolType


class CapitalAllocation(TrackedBase):
    __tablename__ = "capital_allocations"
    __table_args__ = (
        Index("idx_capital_allocation_project", "project_id"),
        Index("idx_capital_allocation_state", "pool_type", "settlement_state"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    pool_type: Mapped[PoolType] = mapped_column(enum_column(PoolType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    settlement_state: Mapped[SettlementState] = mapped_column(
        enum_column(SettlementState),
        default=SettlementState.STAGED,
        nullable=False,
    )
    external_tx_ref: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(nullable=True)
