"""
settlement_services -- Package init and public API.

Responsibility:
    Stateful orchestration that pairs durable local state with the external
    asset network: the settlement orchestrator and its flows, funding source
    resolution, redemption intake, divergence recording, and the background
    audit queue.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        settlement_services/ -> settlement_engines/  (allowed)
        settlement_services/ -> settlement_kernel/   (allowed)
        settlement_services/ -> settlement_config/   (allowed)
        settlement_engines/  -> settlement_services/ (FORBIDDEN)
        settlement_kernel/   -> settlement_services/ (FORBIDDEN)

Invariants enforced:
    - DI transparency: network client, secret store, configuration, and
      clock are wired once in SettlementOrchestrator and passed to the flows.
"""

from settlement_kernel.logging_config import get_logger

logger = get_logger("services")

from settlement_services.audit_queue import AuditQueue, AuditQueueStats
from settlement_services.funding_resolver import FundingSourceResolver
from settlement_services.reconciliation import record_divergence
from settlement_services.redemption_service import RedemptionService
from settlement_services.settlement_orchestrator import SettlementOrchestrator

__all__ = [
    "AuditQueue",
    "AuditQueueStats",
    "FundingSourceResolver",
    "RedemptionService",
    "SettlementOrchestrator",
    "record_divergence",
]
