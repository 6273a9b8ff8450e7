"""
Module: settlement_kernel.models.revenue
Responsibility: Verified project revenue awaiting the regeneration split,
    and the per-recipient rows that split produces.
Architecture position: Kernel > Models.

Invariants enforced:
    - processed flips to true in the same unit of work that writes the
      pool transactions and RevenueAllocation rows for the record.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column


class RevenueStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class RecipientType(str, Enum):
    TOKEN_HOLDER = "token_holder"
    LIQUIDITY_PROVIDER = "liquidity_provider"


class AllocationPolicy(str, Enum):
    TOKEN_WEIGHTED = "token_weighted"
    EQUAL = "equal"
    CONTRIBUTION_WEIGHTED = "contribution_weighted"


class RevenueRecord(TrackedBase):
    __tablename__ = "revenue_records"
    __table_args__ = (
        Index("idx_revenue_pending", "status", "processed"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    period_label: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[RevenueStatus] = mapped_column(
        enum_column(RevenueStatus),
        default=RevenueStatus.PENDING,
        nullable=False,
    )
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class RevenueAllocation(Base):
    __tablename__ = "revenue_allocations"
    __table_args__ = (
        Index("idx_revenue_allocation_record", "revenue_record_id"),
        Index("idx_revenue_allocation_recipient", "recipient_id"),
    )

    revenue_record_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("revenue_records.id"), nullable=False,
    )
    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    recipient_type: Mapped[RecipientType] = mapped_column(
        enum_column(RecipientType), nullable=False,
    )
    recipient_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    weight: Mapped[Decimal] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    policy: Mapped[AllocationPolicy] = mapped_column(
        enum_column(AllocationPolicy), nullable=False,
    )
