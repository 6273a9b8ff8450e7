"""
Module: settlement_kernel.models.distribution
Responsibility: Distribution events, their per-holder allocations, and
    recorded withdrawals.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - sum(allocated_amount) == total_amount of the parent event once it is
      calculated (largest-remainder allocation).
    - One allocation per holder per event (unique constraint).
    - snapshot_total_weight / snapshot_nav are frozen when the event leaves
      draft; later NAV or holding changes do not alter them.
    - Allocations of a non-draft event only change available_amount,
      withdrawn_amount, and status (db/immutability.py).

Lifecycle:
    draft -> calculated -> active -> completed
    draft | calculated -> cancelled
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement_kernel.db.base import Base, TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column


class DistributionStatus(str, Enum):
    DRAFT = "draft"
    CALCULATED = "calculated"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AllocationStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


DISTRIBUTION_TRANSITIONS: dict[DistributionStatus, frozenset[DistributionStatus]] = {
    DistributionStatus.DRAFT: frozenset(
        {DistributionStatus.CALCULATED, DistributionStatus.CANCELLED}
    ),
    DistributionStatus.CALCULATED: frozenset(
        {DistributionStatus.ACTIVE, DistributionStatus.CANCELLED}
    ),
    DistributionStatus.ACTIVE: frozenset({DistributionStatus.COMPLETED}),
    DistributionStatus.COMPLETED: frozenset(),
    DistributionStatus.CANCELLED: frozenset(),
}


class DistributionEvent(TrackedBase):
    __tablename__ = "distribution_events"
    __table_args__ = (
        Index("idx_distribution_project", "project_id"),
        Index("idx_distribution_status", "status"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[DistributionStatus] = mapped_column(
        enum_column(DistributionStatus),
        default=DistributionStatus.DRAFT,
        nullable=False,
    )
    snapshot_total_weight: Mapped[Decimal | None] = mapped_column(nullable=True)
    snapshot_nav: Mapped[Decimal | None] = mapped_column(nullable=True)
    holders_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_allocated: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    total_withdrawn: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    allocations: Mapped[list["DistributionAllocation"]] = relationship(
        "DistributionAllocation",
        back_populates="event",
        order_by="DistributionAllocation.holder_id",
    )

    def __repr__(self) -> str:
        return f"<DistributionEvent {self.title} {self.status.value} {self.total_amount}>"


class DistributionAllocation(Base):
    __tablename__ = "distribution_allocations"
    __table_args__ = (
        UniqueConstraint(
            "distribution_event_id", "holder_id", name="uq_allocation_event_holder",
        ),
        Index("idx_allocation_holder", "holder_id"),
    )

    distribution_event_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("distribution_events.id"), nullable=False,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    holder_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    weight_held: Mapped[Decimal] = mapped_column(nullable=False)
    ownership_percentage: Mapped[Decimal] = mapped_column(nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False)
    available_amount: Mapped[Decimal] = mapped_column(nullable=False)
    withdrawn_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    status: Mapped[AllocationStatus] = mapped_column(
        enum_column(AllocationStatus),
        default=AllocationStatus.PENDING,
        nullable=False,
    )

    event: Mapped["DistributionEvent"] = relationship(
        "DistributionEvent", back_populates="allocations",
    )


class DistributionWithdrawal(Base):
    """A payout against an allocation.  Append-only."""

    __tablename__ = "distribution_withdrawals"
    __table_args__ = (Index("idx_withdrawal_allocation", "allocation_id"),)

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("distribution_allocations.id"), nullable=False,
    )
    holder_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    external_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)
