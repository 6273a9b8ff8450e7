"""
AuditQueue -- background delivery of informational audit events.

Contract:
    ``submit()`` never blocks the caller's transaction on an audit write.
    Entries are delivered at least once, each in its own transaction, by a
    daemon worker thread.  A failed write is retried with exponential
    backoff up to ``max_attempts``; after that the entry is abandoned and
    its full content is logged at CRITICAL.

Architecture: settlement_services.  Implements the kernel's ``AuditSink``
    protocol; kernel services receive it as ``audit_sink``.  Critical audit
    events never go through here: they are written in the caller's
    transaction by ``AuditorService.record``.

Monitoring:
    ``stats()`` returns delivered / failed / abandoned counters and the
    current backlog.  ``failed`` counts failed attempts, not entries.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from settlement_config.schema import AuditQueueConfig
from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.logging_config import get_logger
from settlement_kernel.services.auditor_service import AuditEntry, AuditorService

logger = get_logger("services.audit_queue")


@dataclass(frozen=True)
class AuditQueueStats:
    delivered: int
    failed: int
    abandoned: int
    pending: int


class AuditQueue:
    """
    Bounded in-process queue with one delivery worker.

    Non-goals:
        - NOT durable across process restarts; an entry still queued when
          the process dies is lost.  ``stop()`` drains the backlog first.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: AuditQueueConfig | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._config = config or AuditQueueConfig()
        self._clock = clock or SystemClock()
        self._sleep = sleep
        self._queue: queue.Queue[AuditEntry] = queue.Queue(maxsize=self._config.queue_size)
        self._lock = threading.Lock()
        self._delivered = 0
        self._failed = 0
        self._abandoned = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # AuditSink
    # -------------------------------------------------------------------------

    def submit(self, entry: AuditEntry) -> None:
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            # Backpressure: deliver in the submitting thread.
            logger.warning(
                "audit_queue_full",
                extra={"queue_size": self._config.queue_size, "action": entry.action.value},
            )
            self._deliver(entry)

    # -------------------------------------------------------------------------
    # Worker lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="audit-queue",
            daemon=True,
        )
        self._thread.start()
        logger.info("audit_queue_started", extra={"queue_size": self._config.queue_size})

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the worker after it has drained the backlog."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        remaining = self.drain()
        logger.info("audit_queue_stopped", extra={"drained_on_stop": remaining})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def drain(self) -> int:
        """Deliver everything queued in the calling thread.  Returns the count processed."""
        processed = 0
        while True:
            try:
                entry = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                self._deliver(entry)
            finally:
                self._queue.task_done()
            processed += 1

    def stats(self) -> AuditQueueStats:
        with self._lock:
            return AuditQueueStats(
                delivered=self._delivered,
                failed=self._failed,
                abandoned=self._abandoned,
                pending=self._queue.qsize(),
            )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not (self._stop_event.is_set() and self._queue.empty()):
            try:
                entry = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._deliver(entry)
            except Exception:
                logger.exception("audit_queue_worker_error")
            finally:
                self._queue.task_done()

    def _backoff(self, attempt: int) -> float:
        return min(
            self._config.initial_backoff_seconds * (2 ** (attempt - 1)),
            self._config.max_backoff_seconds,
        )

    def _deliver(self, entry: AuditEntry) -> bool:
        for attempt in range(1, self._config.max_attempts + 1):
            try:
                with transaction_scope(self._session_factory) as session:
                    AuditorService(session, self._clock).record_entry(entry)
            except SQLAlchemyError as exc:
                with self._lock:
                    self._failed += 1
                if attempt == self._config.max_attempts:
                    break
                delay = self._backoff(attempt)
                logger.warning(
                    "audit_delivery_retry",
                    extra={
                        "action": entry.action.value,
                        "entity_id": str(entry.entity_id),
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                self._sleep(delay)
                continue

            with self._lock:
                self._delivered += 1
            return True

        with self._lock:
            self._abandoned += 1
        logger.critical(
            "audit_event_abandoned",
            extra={
                "entity_type": entry.entity_type,
                "entity_id": str(entry.entity_id),
                "action": entry.action.value,
                "actor_id": str(entry.actor_id),
                "attempts": self._config.max_attempts,
                "detail": {k: str(v) for k, v in entry.detail.items()},
            },
        )
        return False
