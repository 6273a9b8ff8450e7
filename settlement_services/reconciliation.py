"""
Durable divergence recording.

When an irreversible external action has succeeded and the local
confirmation has failed, the failed transaction is gone.  The divergence is
therefore written through a fresh session from the session factory and
committed on its own.  If even that write fails, the full record is emitted
as a CRITICAL log line so it is never silently lost.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.clock import Clock
from settlement_kernel.exceptions import SettlementKernelError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.services.reconciliation_ledger import ReconciliationLedgerService

logger = get_logger("services.reconciliation")


def record_divergence(
    session_factory: sessionmaker[Session],
    clock: Clock,
    *,
    error_type: str,
    related_entity_type: str,
    related_entity_id: UUID,
    message: str,
    external_tx_ref: str | None,
    amount: Decimal | None = None,
    details: dict[str, Any] | None = None,
) -> UUID | None:
    """
    Persist a critical ReconciliationRecord in its own transaction.

    Returns:
        The record id, or None when the secondary write failed and only
        the CRITICAL log line exists.
    """
    try:
        with transaction_scope(session_factory) as session:
            record = ReconciliationLedgerService(session, clock).record(
                error_type=error_type,
                related_entity_type=related_entity_type,
                related_entity_id=related_entity_id,
                message=message,
                external_tx_ref=external_tx_ref,
                amount=amount,
                details=details,
            )
            record_id = record.id
    except (SQLAlchemyError, SettlementKernelError):
        logger.critical(
            "reconciliation_record_write_failed",
            exc_info=True,
            extra={
                "error_type": error_type,
                "related_entity_type": related_entity_type,
                "related_entity_id": str(related_entity_id),
                "external_tx_ref": external_tx_ref,
                "amount": str(amount) if amount is not None else None,
                "divergence_message": message,
            },
        )
        return None
    return record_id
