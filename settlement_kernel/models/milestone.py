"""
Module: settlement_kernel.models.milestone
Responsibility: Project milestones and their disbursement state.
Architecture position: Kernel > Models.  May import from db/ and domain/.

Invariants enforced:
    - external_tx_ref is written at most once (unique, and write-once in
      db/immutability.py).  Its presence means the burn already happened.
    - Lifecycle only advances: draft -> submitted -> approved -> disbursed,
      or submitted -> rejected.
    - (project_id, sequence_number) is unique.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column
from settlement_kernel.domain.settlement import SettlementState


class MilestoneStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"


MILESTONE_TRANSITIONS: dict[MilestoneStatus, frozenset[MilestoneStatus]] = {
    MilestoneStatus.DRAFT: frozenset({MilestoneStatus.SUBMITTED}),
    MilestoneStatus.SUBMITTED: frozenset(
        {MilestoneStatus.APPROVED, MilestoneStatus.REJECTED}
    ),
    MilestoneStatus.APPROVED: frozenset({MilestoneStatus.DISBURSED}),
    MilestoneStatus.REJECTED: frozenset(),
    MilestoneStatus.DISBURSED: frozenset(),
}


class Milestone(TrackedBase):
    __tablename__ = "milestones"
    __table_args__ = (
        UniqueConstraint("project_id", "sequence_number", name="uq_milestone_sequence"),
        Index("idx_milestone_status", "status"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[MilestoneStatus] = mapped_column(
        enum_column(MilestoneStatus),
        default=MilestoneStatus.DRAFT,
        nullable=False,
    )
    bank_transfer_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    bank_transfer_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    burned_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    external_tx_ref: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True,
    )
    settlement_state: Mapped[SettlementState] = mapped_column(
        enum_column(SettlementState),
        default=SettlementState.IDLE,
        nullable=False,
    )
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    approved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disbursed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Milestone #{self.sequence_number} {self.status.value}>"
