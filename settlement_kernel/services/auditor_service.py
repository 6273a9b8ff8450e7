"""
AuditorService -- tamper-evident audit trail and hash chain maintenance.

Responsibility:
    Creates append-only, hash-chained AuditEvent rows for every state
    transition in the settlement core, validates the chain, and returns
    per-entity traces.

Architecture position:
    Kernel > Services.  Called directly (inside the transition's own
    transaction) for critical actions, and by the asynchronous audit queue
    for informational ones.

Invariants enforced:
    - seq comes from SequenceService's locked counter.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - Events are never updated or deleted (db/immutability.py).

Failure modes:
    - AuditChainBrokenError from verify_chain() on any mismatch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import AuditChainBrokenError
from settlement_kernel.logging_config import get_logger
from settlement_kernel.models.audit_event import AuditAction, AuditEvent
from settlement_kernel.services.sequence_service import SequenceService
from settlement_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditEntry:
    """One audit record to be written, synchronously or via the queue."""

    entity_type: str
    entity_id: UUID
    action: AuditAction
    actor_id: UUID
    previous_status: str | None = None
    new_status: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    """Destination for informational (non-critical) audit entries."""

    def submit(self, entry: AuditEntry) -> None:
        ...


@dataclass(frozen=True)
class AuditTraceEntry:
    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    previous_status: str | None
    new_status: str | None
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, in chain order."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Creates and validates hash-chained audit events.

    Does NOT call ``session.commit()``; the event becomes durable with the
    caller's transaction, which is what makes critical audit writes atomic
    with the transition they describe.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        return self._session.execute(
            select(AuditEvent.hash).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        previous_status: str | None = None,
        new_status: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append an audit event linked to the current chain head.

        Postconditions:
            - The event is flushed with a fresh seq and a valid chain link.
        """
        # Sequence lock first: it serializes concurrent writers before the
        # chain head is read.
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload = to_json_safe(detail or {})
        payload_hash = hash_payload(payload)
        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            previous_status=previous_status,
            new_status=new_status,
            occurred_at=self._clock.now(),
            payload=payload,
            payload_hash=payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    def record_entry(self, entry: AuditEntry) -> AuditEvent:
        return self.record(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            action=entry.action,
            actor_id=entry.actor_id,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
            detail=entry.detail,
        )

    def verify_chain(self) -> bool:
        """
        Recompute every hash and link in seq order.

        Raises:
            AuditChainBrokenError: At the first mismatch.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        prev_hash: str | None = None
        for event in events:
            if event.prev_hash != prev_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "seq": event.seq},
                )
                raise AuditChainBrokenError(
                    str(event.id), prev_hash or "None", event.prev_hash or "None",
                )

            expected_hash = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action.value,
                payload_hash=hash_payload(event.payload or {}),
                prev_hash=event.prev_hash,
            )
            if event.hash != expected_hash:
                logger.critical(
                    "audit_chain_broken",
                    extra={"audit_event_id": str(event.id), "seq": event.seq},
                )
                raise AuditChainBrokenError(str(event.id), expected_hash, event.hash)

            prev_hash = event.hash

        logger.info("audit_chain_valid", extra={"event_count": len(events)})
        return True

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self._session.execute(
            select(AuditEvent)
            .where(
                AuditEvent.entity_type == entity_type,
                AuditEvent.entity_id == entity_id,
            )
            .order_by(AuditEvent.seq)
        ).scalars().all()

        return AuditTrace(
            entity_type=entity_type,
            entity_id=entity_id,
            entries=tuple(
                AuditTraceEntry(
                    seq=e.seq,
                    action=e.action,
                    occurred_at=e.occurred_at,
                    actor_id=e.actor_id,
                    previous_status=e.previous_status,
                    new_status=e.new_status,
                    payload=e.payload or {},
                    hash=e.hash,
                )
                for e in events
            ),
        )
