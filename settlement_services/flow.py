"""
Shared types of the settlement flows.

A flow is one concrete use of the three-stage pattern (stage, execute,
confirm).  Flows are constructed per request with a FlowContext and run by
SettlementOrchestrator.run().
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from settlement_config.schema import SettlementConfig
from settlement_kernel.domain.clock import Clock
from settlement_kernel.domain.results import OperationResult
from settlement_kernel.network.contract import AssetNetworkClient, SecretStore


@dataclass(frozen=True)
class StagedIntent:
    """
    What stage 1 committed, carried to stages 2 and 3 as plain data.

    ``guard`` is the value the confirm step compares against the row
    (wallet address, bank transfer reference, funding source) to detect a
    concurrent modification between stages.
    """

    entity_id: UUID
    guard: str
    amount: Decimal | None = None
    params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExternalOutcome:
    external_ref: str
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FlowContext:
    """Collaborators every flow may use."""

    network: AssetNetworkClient
    secret_store: SecretStore
    config: SettlementConfig
    clock: Clock

    @property
    def call_timeout(self) -> float:
        """Deadline in seconds for each network call."""
        return self.config.network.call_timeout_seconds


class SettlementFlow(Protocol):
    name: str
    entity_type: str

    def stage(self, session: Session, actor_id: UUID) -> StagedIntent | OperationResult:
        """Lock, validate, and move to EXTERNAL_PENDING; or short-circuit with a result."""
        ...

    def execute(self, intent: StagedIntent) -> ExternalOutcome:
        ...

    def confirm(
        self,
        session: Session,
        intent: StagedIntent,
        outcome: ExternalOutcome,
        actor_id: UUID,
    ) -> dict[str, Any]:
        ...

    def release(self, session: Session, intent: StagedIntent) -> None:
        """Return the entity to STAGED after a definite external failure."""
        ...

    def mark_divergent(self, session: Session, intent: StagedIntent) -> None:
        ...


