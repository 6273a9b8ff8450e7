"""Domain models for the settlement kernel."""

from settlement_kernel.models.audit_event import AuditAction, AuditEvent
from settlement_kernel.models.capital_allocation import CapitalAllocation
from settlement_kernel.models.capital_pool import (
    CapitalPool,
    CapitalPoolTransaction,
    ContributionStatus,
    LiquidityContribution,
    PoolDirection,
    PoolType,
)
from settlement_kernel.models.distribution import (
    DISTRIBUTION_TRANSITIONS,
    AllocationStatus,
    DistributionAllocation,
    DistributionEvent,
    DistributionStatus,
    DistributionWithdrawal,
)
from settlement_kernel.models.milestone import (
    MILESTONE_TRANSITIONS,
    Milestone,
    MilestoneStatus,
)
from settlement_kernel.models.nav_record import NavRecord, NavSource
from settlement_kernel.models.project import Project, ProjectStatus, TokenHolding
from settlement_kernel.models.project_wallet import ProjectWallet
from settlement_kernel.models.reconciliation import (
    ReconciliationRecord,
    ReconciliationSeverity,
)
from settlement_kernel.models.redemption import RedemptionRequest, RedemptionStatus
from settlement_kernel.models.revenue import (
    AllocationPolicy,
    RecipientType,
    RevenueAllocation,
    RevenueRecord,
    RevenueStatus,
)
from settlement_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "AuditAction",
    "AuditEvent",
    "CapitalAllocation",
    "CapitalPool",
    "CapitalPoolTransaction",
    "ContributionStatus",
    "LiquidityContribution",
    "PoolDirection",
    "PoolType",
    "DISTRIBUTION_TRANSITIONS",
    "AllocationStatus",
    "DistributionAllocation",
    "DistributionEvent",
    "DistributionStatus",
    "DistributionWithdrawal",
    "MILESTONE_TRANSITIONS",
    "Milestone",
    "MilestoneStatus",
    "NavRecord",
    "NavSource",
    "Project",
    "ProjectStatus",
    "TokenHolding",
    "ProjectWallet",
    "ReconciliationRecord",
    "ReconciliationSeverity",
    "RedemptionRequest",
    "RedemptionStatus",
    "AllocationPolicy",
    "RecipientType",
    "RevenueAllocation",
    "RevenueRecord",
    "RevenueStatus",
    "SequenceCounter",
]
