"""
DistributionService -- distribution events and per-holder allocations.

Responsibility:
    Drives a distribution event through draft -> calculated -> active ->
    completed (or cancelled), computes per-holder allocations with the
    largest-remainder calculator, and records withdrawals.

Architecture position:
    Kernel > Services.  Uses settlement_engines.allocation for the math.

Invariants enforced:
    - Holdings are snapshotted when the event leaves draft.  The event row
      is locked for the calculation and the holding rows are read in the
      same transaction, so a concurrent purchase is either wholly in or
      wholly out of the snapshot.
    - sum(allocated_amount) == total_amount exactly.
    - A withdrawal never exceeds the allocation's available_amount.

Failure modes:
    - InvalidValueError for non-positive amounts.
    - InvalidTransitionError for a transition the lifecycle does not allow.
    - NoEligibleHoldersError when no holder has a positive position.
    - WithdrawalExceedsAvailableError.

Audit relevance:
    Creation is informational.  Calculation, activation, cancellation,
    withdrawal, and completion are critical and written in the same
    transaction.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement_engines.allocation import AllocationCalculator, Claim
from settlement_kernel.db.types import decimal_from_db
from settlement_kernel.domain.clock import Clock
from settlement_kernel.exceptions import (
    EntityNotFoundError,
    InvalidTransitionError,
    InvalidValueError,
    NoEligibleHoldersError,
    WithdrawalExceedsAvailableError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.models.distribution import (
    DISTRIBUTION_TRANSITIONS,
    AllocationStatus,
    DistributionAllocation,
    DistributionEvent,
    DistributionStatus,
    DistributionWithdrawal,
)
from settlement_kernel.models.project import Project, TokenHolding
from settlement_kernel.services.auditor_service import AuditEntry, AuditSink
from settlement_kernel.services.base import BaseService
from settlement_kernel.services.nav_ledger import NavLedgerService

logger = get_logger("services.distribution")

ZERO = Decimal("0")


@dataclass(frozen=True)
class DistributionStats:
    event_count: int
    by_status: dict[str, int] = field(default_factory=dict)
    total_amount: Decimal = ZERO
    total_allocated: Decimal = ZERO
    total_withdrawn: Decimal = ZERO

    @property
    def outstanding(self) -> Decimal:
        return self.total_allocated - self.total_withdrawn


class DistributionService(BaseService):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit_sink: AuditSink | None = None,
    ):
        super().__init__(session, clock, audit_sink)
        self._calculator = AllocationCalculator()
        self._nav_ledger = NavLedgerService(session, self.clock)

    # -----------------------------------------------------------------
    # Lookup
    # -----------------------------------------------------------------

    def get_event(self, event_id: UUID, lock: bool = False) -> DistributionEvent:
        stmt = select(DistributionEvent).where(DistributionEvent.id == event_id)
        if lock:
            stmt = stmt.with_for_update()
        event = self.session.execute(stmt).scalar_one_or_none()
        if event is None:
            raise EntityNotFoundError("DistributionEvent", str(event_id))
        return event

    def get_allocations(self, event_id: UUID) -> list[DistributionAllocation]:
        return list(
            self.session.execute(
                select(DistributionAllocation)
                .where(DistributionAllocation.distribution_event_id == event_id)
                .order_by(DistributionAllocation.holder_id)
            ).scalars()
        )

    def get_holder_allocations(
        self,
        holder_id: UUID,
        project_id: UUID | None = None,
    ) -> list[DistributionAllocation]:
        stmt = select(DistributionAllocation).where(
            DistributionAllocation.holder_id == holder_id
        )
        if project_id is not None:
            stmt = stmt.where(DistributionAllocation.project_id == project_id)
        return list(self.session.execute(stmt).scalars())

    def get_project_events(
        self,
        project_id: UUID,
        status: DistributionStatus | None = None,
    ) -> list[DistributionEvent]:
        stmt = select(DistributionEvent).where(DistributionEvent.project_id == project_id)
        if status is not None:
            stmt = stmt.where(DistributionEvent.status == status)
        return list(
            self.session.execute(stmt.order_by(DistributionEvent.created_at)).scalars()
        )

    def get_stats(self, project_id: UUID | None = None) -> DistributionStats:
        stmt = select(
            DistributionEvent.status,
            func.count(DistributionEvent.id),
            func.coalesce(func.sum(DistributionEvent.total_amount), 0),
            func.coalesce(func.sum(DistributionEvent.total_allocated), 0),
            func.coalesce(func.sum(DistributionEvent.total_withdrawn), 0),
        ).group_by(DistributionEvent.status)
        if project_id is not None:
            stmt = stmt.where(DistributionEvent.project_id == project_id)

        by_status: dict[str, int] = {}
        total_amount = total_allocated = total_withdrawn = ZERO
        for status, count, amount, allocated, withdrawn in self.session.execute(stmt):
            by_status[status.value] = count
            if status != DistributionStatus.CANCELLED:
                total_amount += decimal_from_db(amount)
                total_allocated += decimal_from_db(allocated)
                total_withdrawn += decimal_from_db(withdrawn)

        return DistributionStats(
            event_count=sum(by_status.values()),
            by_status=by_status,
            total_amount=total_amount,
            total_allocated=total_allocated,
            total_withdrawn=total_withdrawn,
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    def _transition(
        self,
        event: DistributionEvent,
        to_status: DistributionStatus,
    ) -> DistributionStatus:
        if to_status not in DISTRIBUTION_TRANSITIONS[event.status]:
            raise InvalidTransitionError(
                "DistributionEvent", str(event.id), event.status.value, to_status.value,
            )
        previous = event.status
        event.status = to_status
        return previous

    def create_event(
        self,
        project_id: UUID,
        title: str,
        total_amount: Decimal,
        actor_id: UUID,
    ) -> DistributionEvent:
        if total_amount <= 0:
            raise InvalidValueError("total_amount", total_amount, "must be positive")
        if self.session.get(Project, project_id) is None:
            raise EntityNotFoundError("Project", str(project_id))

        event = DistributionEvent(
            project_id=project_id,
            title=title,
            total_amount=total_amount,
            status=DistributionStatus.DRAFT,
            created_by_id=actor_id,
        )
        self.session.add(event)
        self.session.flush()

        self._audit_informational(AuditEntry(
            entity_type="DistributionEvent",
            entity_id=event.id,
            action=AuditAction.DISTRIBUTION_CREATED,
            actor_id=actor_id,
            new_status=DistributionStatus.DRAFT.value,
            detail={"project_id": project_id, "total_amount": total_amount},
        ))
        logger.info(
            "distribution_created",
            extra={
                "distribution_event_id": str(event.id),
                "project_id": str(project_id),
                "total_amount": str(total_amount),
            },
        )
        return event

    def calculate_allocations(
        self,
        event_id: UUID,
        actor_id: UUID,
    ) -> list[DistributionAllocation]:
        """
        Snapshot holdings and allocate the event total pro rata by tokens held.

        Preconditions:
            - Event is in draft.
            - At least one holder has a positive position.
        """
        event = self.get_event(event_id, lock=True)
        if event.status != DistributionStatus.DRAFT:
            raise InvalidTransitionError(
                "DistributionEvent", str(event_id), event.status.value,
                DistributionStatus.CALCULATED.value,
            )

        holdings = self.session.execute(
            select(TokenHolding)
            .where(
                TokenHolding.project_id == event.project_id,
                TokenHolding.tokens_held > 0,
            )
            .with_for_update()
        ).scalars().all()
        if not holdings:
            raise NoEligibleHoldersError(f"distribution {event_id}")

        result = self._calculator.allocate_pro_rata(
            total=event.total_amount,
            claims=[Claim(h.holder_id, h.tokens_held) for h in holdings],
        )

        active_nav = self._nav_ledger.find_active_nav(event.project_id)

        allocations = [
            DistributionAllocation(
                distribution_event_id=event.id,
                project_id=event.project_id,
                holder_id=line.holder_id,
                weight_held=line.weight,
                ownership_percentage=line.ownership_percentage,
                allocated_amount=line.amount,
                available_amount=line.amount,
                withdrawn_amount=ZERO,
                status=AllocationStatus.PENDING,
            )
            for line in result.lines
        ]
        self.session.add_all(allocations)

        event.snapshot_total_weight = result.total_weight
        event.snapshot_nav = active_nav.value_per_token if active_nav else None
        event.holders_count = len(allocations)
        event.total_allocated = result.allocated_total
        event.calculated_at = self.clock.now()
        event.updated_by_id = actor_id
        previous = self._transition(event, DistributionStatus.CALCULATED)
        self.session.flush()

        self.auditor.record(
            entity_type="DistributionEvent",
            entity_id=event.id,
            action=AuditAction.ALLOCATIONS_CALCULATED,
            actor_id=actor_id,
            previous_status=previous.value,
            new_status=event.status.value,
            detail={
                "total_amount": event.total_amount,
                "total_allocated": event.total_allocated,
                "snapshot_total_weight": event.snapshot_total_weight,
                "snapshot_nav": event.snapshot_nav,
                "holders_count": event.holders_count,
                "leftover_units": result.leftover_units,
                "remainder_recipients": [
                    line.holder_id for line in result.lines if line.received_remainder_unit
                ],
            },
        )
        logger.info(
            "distribution_calculated",
            extra={
                "distribution_event_id": str(event.id),
                "holders_count": event.holders_count,
                "total_allocated": str(event.total_allocated),
                "leftover_units": result.leftover_units,
            },
        )
        return allocations

    def activate_event(self, event_id: UUID, actor_id: UUID) -> DistributionEvent:
        """Open a calculated event for withdrawals."""
        event = self.get_event(event_id, lock=True)
        previous = self._transition(event, DistributionStatus.ACTIVE)
        for allocation in self.get_allocations(event_id):
            allocation.status = AllocationStatus.AVAILABLE
        event.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            entity_type="DistributionEvent",
            entity_id=event.id,
            action=AuditAction.DISTRIBUTION_ACTIVATED,
            actor_id=actor_id,
            previous_status=previous.value,
            new_status=event.status.value,
            detail={"total_allocated": event.total_allocated},
        )
        logger.info("distribution_activated", extra={"distribution_event_id": str(event.id)})
        return event

    def cancel_event(self, event_id: UUID, actor_id: UUID, reason: str) -> DistributionEvent:
        """Cancel a draft or calculated event and every allocation under it."""
        event = self.get_event(event_id, lock=True)
        previous = self._transition(event, DistributionStatus.CANCELLED)

        allocations = self.get_allocations(event_id)
        for allocation in allocations:
            allocation.status = AllocationStatus.CANCELLED
        event.cancelled_at = self.clock.now()
        event.cancelled_by_id = actor_id
        event.cancellation_reason = reason
        event.updated_by_id = actor_id
        self.session.flush()

        self.auditor.record(
            entity_type="DistributionEvent",
            entity_id=event.id,
            action=AuditAction.DISTRIBUTION_CANCELLED,
            actor_id=actor_id,
            previous_status=previous.value,
            new_status=event.status.value,
            detail={"reason": reason, "cancelled_allocations": len(allocations)},
        )
        logger.warning(
            "distribution_cancelled",
            extra={
                "distribution_event_id": str(event.id),
                "previous_status": previous.value,
                "cancelled_allocations": len(allocations),
            },
        )
        return event

    def record_withdrawal(
        self,
        allocation_id: UUID,
        amount: Decimal,
        actor_id: UUID,
        external_tx_ref: str | None = None,
    ) -> DistributionWithdrawal:
        """
        Record a payout against an allocation.

        The event completes once every allocated unit has been withdrawn.
        """
        if amount <= 0:
            raise InvalidValueError("amount", amount, "must be positive")

        allocation = self.session.execute(
            select(DistributionAllocation)
            .where(DistributionAllocation.id == allocation_id)
            .with_for_update()
        ).scalar_one_or_none()
        if allocation is None:
            raise EntityNotFoundError("DistributionAllocation", str(allocation_id))

        event = self.get_event(allocation.distribution_event_id, lock=True)
        if event.status != DistributionStatus.ACTIVE:
            raise InvalidTransitionError(
                "DistributionEvent", str(event.id), event.status.value, "withdrawal",
            )
        if amount > allocation.available_amount:
            raise WithdrawalExceedsAvailableError(
                str(allocation_id), amount, allocation.available_amount,
            )

        allocation.available_amount -= amount
        allocation.withdrawn_amount += amount
        if allocation.available_amount == 0:
            allocation.status = AllocationStatus.WITHDRAWN
        event.total_withdrawn += amount

        withdrawal = DistributionWithdrawal(
            allocation_id=allocation.id,
            holder_id=allocation.holder_id,
            amount=amount,
            external_tx_ref=external_tx_ref,
            recorded_at=self.clock.now(),
        )
        self.session.add(withdrawal)
        self.session.flush()

        self.auditor.record(
            entity_type="DistributionAllocation",
            entity_id=allocation.id,
            action=AuditAction.WITHDRAWAL_RECORDED,
            actor_id=actor_id,
            new_status=allocation.status.value,
            detail={
                "amount": amount,
                "available_amount": allocation.available_amount,
                "external_tx_ref": external_tx_ref,
            },
        )

        if event.total_withdrawn == event.total_allocated:
            previous = self._transition(event, DistributionStatus.COMPLETED)
            event.updated_by_id = actor_id
            self.session.flush()
            self.auditor.record(
                entity_type="DistributionEvent",
                entity_id=event.id,
                action=AuditAction.DISTRIBUTION_COMPLETED,
                actor_id=actor_id,
                previous_status=previous.value,
                new_status=event.status.value,
                detail={"total_withdrawn": event.total_withdrawn},
            )
            logger.info(
                "distribution_completed",
                extra={"distribution_event_id": str(event.id)},
            )

        logger.info(
            "withdrawal_recorded",
            extra={
                "allocation_id": str(allocation.id),
                "holder_id": str(allocation.holder_id),
                "amount": str(amount),
                "available_amount": str(allocation.available_amount),
            },
        )
        return withdrawal
