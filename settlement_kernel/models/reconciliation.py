"""
Module: settlement_kernel.models.reconciliation
Responsibility: Durable record of a divergence between the asset network
    and the local ledger.
Architecture position: Kernel > Models.

Invariants enforced:
    - Created only when an irreversible external action succeeded and the
      paired local write failed or conflicted.
    - Never deleted.  Only the resolution fields change, and only once
      (db/immutability.py).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, UUIDString
from settlement_kernel.db.types import enum_column


class ReconciliationSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReconciliationRecord(Base):
    __tablename__ = "reconciliation_records"
    __table_args__ = (
        Index("idx_reconciliation_unresolved", "resolved", "severity"),
        Index("idx_reconciliation_entity", "related_entity_type", "related_entity_id"),
    )

    error_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[ReconciliationSeverity] = mapped_column(
        enum_column(ReconciliationSeverity), nullable=False,
    )
    external_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    related_entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    related_entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    detected_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        state = "resolved" if self.resolved else "open"
        return f"<ReconciliationRecord {self.error_type} {self.severity.value} {state}>"
