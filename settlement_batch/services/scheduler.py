"""
RegenerationScheduler -- in-process interval scheduler for the regeneration job.

Contract:
    Every ``interval_seconds`` calls the injected ``run_cycle`` callable,
    which submits and executes one regeneration batch job.

Architecture: settlement_batch/services.  Knows nothing about sessions or
    tasks; ``BatchOrchestrator.create_scheduler()`` supplies the callable.

Invariants enforced:
    - A failing cycle is logged and never stops the loop.
    - Graceful shutdown: ``stop()`` is honoured between cycles; a cycle in
      progress runs to completion.
"""

from __future__ import annotations

import threading
from typing import Callable

from settlement_batch.domain.types import BatchRunResult
from settlement_kernel.exceptions import BatchIdempotencyError
from settlement_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")


class RegenerationScheduler:
    """Background thread that runs a regeneration cycle on an interval.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Two processes
          firing in the same minute are separated by the job idempotency key.
    """

    def __init__(
        self,
        run_cycle: Callable[[], BatchRunResult],
        interval_seconds: float = 3600.0,
    ):
        self._run_cycle = run_cycle
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._cycles = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> BatchRunResult | None:
        """Run one cycle now (public for testing).

        Returns the run result, or None if the cycle was skipped or failed.
        """
        try:
            result = self._run_cycle()
        except BatchIdempotencyError as exc:
            logger.info(
                "regeneration_cycle_skipped",
                extra={"idempotency_key": exc.idempotency_key},
            )
            return None
        except Exception:
            logger.exception("regeneration_cycle_failed")
            return None

        self._cycles += 1
        return result

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="regeneration-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait up to ``timeout`` seconds for the thread."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped", extra={"cycles": self._cycles})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cycles(self) -> int:
        return self._cycles

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._interval)
