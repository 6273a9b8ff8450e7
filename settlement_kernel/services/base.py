"""
BaseService -- abstract base for kernel services.

Services receive a SQLAlchemy ``Session`` from the caller and persist via
``session.flush()``.  They never commit or roll back; the caller owns the
transaction so that multi-step transitions (supersede + insert, allocate +
audit, confirm + pool outflow + NAV) are atomic.

Audit writes come in two kinds:
    critical       -- ``self.auditor.record(...)`` in the caller's transaction;
                      the audit row commits or rolls back with the transition.
    informational  -- ``self._audit_informational(entry)``; handed to the
                      asynchronous audit queue when one is wired, written
                      in-session otherwise.
"""

from abc import ABC

from sqlalchemy.orm import Session

from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.services.auditor_service import AuditEntry, AuditorService, AuditSink


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        audit_sink: AuditSink | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.auditor = AuditorService(session, self.clock)
        self._audit_sink = audit_sink

    def _audit_informational(self, entry: AuditEntry) -> None:
        if self._audit_sink is not None:
            self._audit_sink.submit(entry)
        else:
            self.auditor.record_entry(entry)
