"""
Module: settlement_kernel.models.project_wallet
Responsibility: A project's account on the asset network.
Architecture position: Kernel > Models.

Two-phase lifecycle: staged (address generated and persisted, secret held
by reference in the secret store) then funded (account created, trustline
established, confirmed by compare-and-swap on address).  funded_at is set
only by the confirm step.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from settlement_kernel.db.base import Base, UUIDString
from settlement_kernel.db.types import enum_column
from settlement_kernel.domain.settlement import SettlementState


class ProjectWallet(Base):
    __tablename__ = "project_wallets"

    project_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("projects.id"), nullable=False, unique=True,
    )
    address: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    secret_material_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    settlement_state: Mapped[SettlementState] = mapped_column(
        enum_column(SettlementState),
        default=SettlementState.STAGED,
        nullable=False,
    )
    staged_at: Mapped[datetime] = mapped_column(nullable=False)
    funded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    account_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trustline_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def is_funded(self) -> bool:
        return self.funded_at is not None
