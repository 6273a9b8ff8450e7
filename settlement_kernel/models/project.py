"""
Module: settlement_kernel.models.project
Responsibility: Projects and per-holder token positions.
Architecture position: Kernel > Models.  May import from db/ only.

Project.nav is the project's total net asset value in the settlement
currency.  token_price is a cached derivative (nav / tokens_outstanding)
refreshed whenever NAV or the outstanding supply changes; the NAV ledger's
active NavRecord is the authoritative per-token value.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, TrackedBase, UUIDString
from settlement_kernel.db.types import enum_column


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    FUNDING = "funding"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Project(TrackedBase):
    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[ProjectStatus] = mapped_column(
        enum_column(ProjectStatus),
        default=ProjectStatus.ACTIVE,
        nullable=False,
    )
    nav: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    tokens_outstanding: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    token_price: Mapped[Decimal | None] = mapped_column(nullable=True)
    capital_allocated: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    total_milestones: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Per-project revenue split overrides; all four set or all null.
    split_token_holders: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    split_liquidity_pool: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    split_treasury: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    split_project_reinvestment: Mapped[Decimal | None] = mapped_column(
        Numeric(7, 4), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Project {self.name} nav={self.nav}>"

    @property
    def has_split_override(self) -> bool:
        return self.split_token_holders is not None


class TokenHolding(Base):
    """A holder's position in a project.  liquid = held - locked."""

    __tablename__ = "token_holdings"
    __table_args__ = (
        UniqueConstraint("project_id", "holder_id", name="uq_holding_project_holder"),
        Index("idx_holding_project", "project_id"),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    holder_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    tokens_held: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    locked_tokens: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    @property
    def liquid_tokens(self) -> Decimal:
        return self.tokens_held - self.locked_tokens
