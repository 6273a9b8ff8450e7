"""
Module: settlement_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Append-only; no UPDATE or DELETE (db/immutability.py).
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      validated by AuditorService.verify_chain().
    - seq is strictly increasing, allocated by SequenceService.

Every state transition in the settlement core produces an AuditEvent,
either inside the transition's own transaction (critical actions:
allocation, disbursement, cancellation, NAV, capital movement) or through
the asynchronous audit queue (informational actions: creation, submission).
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, UUIDString
from settlement_kernel.db.types import enum_column


class AuditAction(str, Enum):
    # NAV
    NAV_RECORDED = "nav_recorded"
    TOKEN_PRICE_RECALCULATED = "token_price_recalculated"

    # Distribution lifecycle
    DISTRIBUTION_CREATED = "distribution_created"
    ALLOCATIONS_CALCULATED = "allocations_calculated"
    DISTRIBUTION_ACTIVATED = "distribution_activated"
    DISTRIBUTION_CANCELLED = "distribution_cancelled"
    DISTRIBUTION_COMPLETED = "distribution_completed"
    WITHDRAWAL_RECORDED = "withdrawal_recorded"

    # Milestone lifecycle
    MILESTONE_CREATED = "milestone_created"
    MILESTONE_UPDATED = "milestone_updated"
    MILESTONE_DELETED = "milestone_deleted"
    MILESTONE_SUBMITTED = "milestone_submitted"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_REJECTED = "milestone_rejected"
    BANK_TRANSFER_ATTACHED = "bank_transfer_attached"
    MILESTONE_DISBURSED = "milestone_disbursed"
    SETTLEMENT_RELEASED = "settlement_released"

    # Wallets and capital
    WALLET_STAGED = "wallet_staged"
    WALLET_FUNDED = "wallet_funded"
    CAPITAL_ALLOCATED = "capital_allocated"
    POOL_TRANSACTION_RECORDED = "pool_transaction_recorded"

    # Redemption
    REDEMPTION_REQUESTED = "redemption_requested"
    REDEMPTION_COMPLETED = "redemption_completed"
    REDEMPTION_REJECTED = "redemption_rejected"

    # Regeneration
    REVENUE_PROCESSED = "revenue_processed"
    REGENERATION_CYCLE_EXECUTED = "regeneration_cycle_executed"

    # Reconciliation
    DIVERGENCE_RECORDED = "divergence_recorded"
    DIVERGENCE_RESOLVED = "divergence_resolved"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    prev_hash is None only for the genesis event.  The model does not check
    hash correctness on insert; AuditorService computes and verifies it.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[AuditAction] = mapped_column(enum_column(AuditAction), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action.value} on {self.entity_type}:{self.entity_id}>"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash is None
