"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The settlement ledgers are reconstructed from their own history: pool
balances are sums over an append-only log, the NAV history is a version
chain, and the audit trail is hash-linked.  Any in-place edit to those rows
silently rewrites history, so the ORM refuses it before SQL is sent.

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
    [before_delete event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                   | Rule
-------------------------|---------------------------------------------------
AuditEvent               | Insert only
CapitalPoolTransaction   | Insert only
NavRecord                | Only is_superseded, only False -> True; no delete
ReconciliationRecord     | Only resolution fields, only once; no delete
Milestone                | external_tx_ref written at most once
DistributionAllocation   | Non-draft event: only available_amount,
                         | withdrawn_amount, status

===============================================================================
USAGE
===============================================================================

Registered by ``create_tables()``; safe to call more than once:

    from settlement_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect, select
from sqlalchemy.orm.attributes import get_history

from settlement_kernel.exceptions import ImmutabilityViolationError
from settlement_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

RECONCILIATION_RESOLUTION_FIELDS = frozenset(
    {"resolved", "resolved_at", "resolved_by_id", "resolution_notes"}
)

ALLOCATION_MUTABLE_FIELDS = frozenset({"available_amount", "withdrawn_amount", "status"})


def _blocked(entity_type: str, target, operation: str, reason: str, field: str | None = None):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "field": field,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    return [attr.key for attr in inspect(target).attrs if attr.history.has_changes()]


# =============================================================================
# Insert-only ledgers
# =============================================================================


def _check_audit_event_update(mapper, connection, target):
    raise _blocked(
        "AuditEvent", target, "UPDATE", "Audit events are immutable and cannot be modified",
    )


def _check_audit_event_delete(mapper, connection, target):
    raise _blocked("AuditEvent", target, "DELETE", "Audit events cannot be deleted")


def _check_pool_transaction_update(mapper, connection, target):
    raise _blocked(
        "CapitalPoolTransaction",
        target,
        "UPDATE",
        "Pool transactions are append-only; record a compensating transaction instead",
    )


def _check_pool_transaction_delete(mapper, connection, target):
    raise _blocked(
        "CapitalPoolTransaction", target, "DELETE", "Pool transactions cannot be deleted",
    )


# =============================================================================
# NAV records
# =============================================================================


def _check_nav_record_update(mapper, connection, target):
    """Only the supersede flag may change, and only from False to True."""
    for field in _changed_fields(target):
        if field != "is_superseded":
            raise _blocked(
                "NavRecord", target, "UPDATE",
                f"Cannot modify field '{field}' on a NAV record", field,
            )

    history = get_history(target, "is_superseded")
    if history.deleted and history.deleted[0] is True:
        raise _blocked(
            "NavRecord", target, "UPDATE",
            "A superseded NAV record cannot be reactivated", "is_superseded",
        )


def _check_nav_record_delete(mapper, connection, target):
    raise _blocked("NavRecord", target, "DELETE", "NAV records cannot be deleted")


# =============================================================================
# Reconciliation records
# =============================================================================


def _check_reconciliation_update(mapper, connection, target):
    for field in _changed_fields(target):
        if field not in RECONCILIATION_RESOLUTION_FIELDS:
            raise _blocked(
                "ReconciliationRecord", target, "UPDATE",
                f"Cannot modify field '{field}' on a reconciliation record", field,
            )

    resolved = get_history(target, "resolved")
    was_resolved = (
        resolved.deleted[0] if resolved.deleted
        else bool(resolved.unchanged and resolved.unchanged[0])
    )
    if was_resolved:
        raise _blocked(
            "ReconciliationRecord", target, "UPDATE",
            "Reconciliation record is already resolved",
        )


def _check_reconciliation_delete(mapper, connection, target):
    raise _blocked(
        "ReconciliationRecord", target, "DELETE", "Reconciliation records cannot be deleted",
    )


# =============================================================================
# Milestones
# =============================================================================


def _check_milestone_update(mapper, connection, target):
    """external_tx_ref is the burn idempotency guard; once set it never changes."""
    history = get_history(target, "external_tx_ref")
    if history.deleted and history.deleted[0] is not None:
        raise _blocked(
            "Milestone", target, "UPDATE",
            "external_tx_ref is already set and cannot be changed", "external_tx_ref",
        )


def _check_milestone_delete(mapper, connection, target):
    if target.external_tx_ref is not None:
        raise _blocked(
            "Milestone", target, "DELETE", "A disbursed milestone cannot be deleted",
        )


# =============================================================================
# Distribution allocations
# =============================================================================


def _parent_event_status(connection, event_id):
    from settlement_kernel.models.distribution import DistributionEvent

    return connection.execute(
        select(DistributionEvent.status).where(DistributionEvent.id == event_id)
    ).scalar_one_or_none()


def _check_allocation_update(mapper, connection, target):
    from settlement_kernel.models.distribution import DistributionStatus

    status = _parent_event_status(connection, target.distribution_event_id)
    if status is None or status == DistributionStatus.DRAFT:
        return

    for field in _changed_fields(target):
        if field == "event" or field in ALLOCATION_MUTABLE_FIELDS:
            continue
        raise _blocked(
            "DistributionAllocation", target, "UPDATE",
            f"Cannot modify field '{field}' once the event has left draft", field,
        )


def _check_allocation_delete(mapper, connection, target):
    from settlement_kernel.models.distribution import DistributionStatus

    status = _parent_event_status(connection, target.distribution_event_id)
    if status is not None and status != DistributionStatus.DRAFT:
        raise _blocked(
            "DistributionAllocation", target, "DELETE",
            "Allocations of a calculated event cannot be deleted; cancel the event",
        )


# =============================================================================
# Registration
# =============================================================================


def _listeners():
    from settlement_kernel.models.audit_event import AuditEvent
    from settlement_kernel.models.capital_pool import CapitalPoolTransaction
    from settlement_kernel.models.distribution import DistributionAllocation
    from settlement_kernel.models.milestone import Milestone
    from settlement_kernel.models.nav_record import NavRecord
    from settlement_kernel.models.reconciliation import ReconciliationRecord

    return [
        (AuditEvent, "before_update", _check_audit_event_update),
        (AuditEvent, "before_delete", _check_audit_event_delete),
        (CapitalPoolTransaction, "before_update", _check_pool_transaction_update),
        (CapitalPoolTransaction, "before_delete", _check_pool_transaction_delete),
        (NavRecord, "before_update", _check_nav_record_update),
        (NavRecord, "before_delete", _check_nav_record_delete),
        (ReconciliationRecord, "before_update", _check_reconciliation_update),
        (ReconciliationRecord, "before_delete", _check_reconciliation_delete),
        (Milestone, "before_update", _check_milestone_update),
        (Milestone, "before_delete", _check_milestone_delete),
        (DistributionAllocation, "before_update", _check_allocation_update),
        (DistributionAllocation, "before_delete", _check_allocation_delete),
    ]


def register_immutability_listeners() -> None:
    """Register all immutability listeners.  Already-registered ones are skipped."""
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability listeners.

    WARNING: Only use this in tests that need to violate the rules on
    purpose to verify detection elsewhere.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
