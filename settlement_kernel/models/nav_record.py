"""
Module: settlement_kernel.models.nav_record
Responsibility: Versioned per-token NAV history.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - version is strictly increasing per project (allocated under the
      project row lock), giving a total order even for equal effective_at.
    - At most one record per project has is_superseded = false.  The partial
      unique index enforces it in the database; NavLedgerService enforces it
      in the unit of work (supersede flushes before the insert).
    - Records are never deleted and only is_superseded may change, and only
      from false to true (db/immutability.py).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, UUIDString
from settlement_kernel.db.types import enum_column


class NavSource(str, Enum):
    MANUAL = "manual"
    FORMULA = "formula"
    AUDITED = "audited"


class NavRecord(Base):
    __tablename__ = "nav_records"
    __table_args__ = (
        UniqueConstraint("project_id", "version", name="uq_nav_project_version"),
        Index("idx_nav_project_effective", "project_id", "effective_at"),
        Index(
            "uq_nav_active_per_project",
            "project_id",
            unique=True,
            postgresql_where=text("is_superseded = false"),
            sqlite_where=text("is_superseded = 0"),
        ),
    )

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    value_per_token: Mapped[Decimal] = mapped_column(nullable=False)
    source: Mapped[NavSource] = mapped_column(enum_column(NavSource), nullable=False)
    effective_at: Mapped[datetime] = mapped_column(nullable=False)
    is_superseded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        state = "superseded" if self.is_superseded else "active"
        return f"<NavRecord {self.project_id} {self.value_per_token} {state}>"
