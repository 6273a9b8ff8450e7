"""
Module: settlement_kernel.models.redemption
Responsibility: Holder requests to redeem tokens for settlement currency.
Architecture position: Kernel > Models.

The value is priced once, at creation, against the active NAV record and
never re-priced.  Funding source is chosen at processing time.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column
from settlement_kernel.domain.settlement import SettlementState


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class RedemptionRequest(TrackedBase):
    __tablename__ = "redemption_requests"
    __table_args__ = (
        Index("idx_redemption_project", "project_id"),
        Index("idx_redemption_status", "status"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    holder_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    tokens_amount: Mapped[Decimal] = mapped_column(nullable=False)
    nav_per_token: Mapped[Decimal] = mapped_column(nullable=False)
    redemption_value: Mapped[Decimal] = mapped_column(nullable=False)
    destination_address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[RedemptionStatus] = mapped_column(
        enum_column(RedemptionStatus),
        default=RedemptionStatus.PENDING,
        nullable=False,
    )
    funding_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    settlement_state: Mapped[SettlementState] = mapped_column(
        enum_column(SettlementState),
        default=SettlementState.IDLE,
        nullable=False,
    )
    external_tx_ref: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
