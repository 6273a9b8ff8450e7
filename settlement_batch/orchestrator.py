"""
BatchOrchestrator -- DI container for the batch processing system.

Contract:
    Wires the TaskRegistry with the regeneration task, creates
    BatchExecutors, runs regeneration cycles, and creates the interval
    scheduler.  Single place where all batch dependencies are composed.

Architecture: settlement_batch (top-level).  This is the canonical entry
    point for configuring and running batch jobs; the kernel never imports
    from settlement_batch.

Invariants enforced:
    - Clock injection: the executor and every task receive the same Clock.
    - A regeneration cycle commits after every revenue record, so a crash
      mid-run leaves the records already processed untouched.
    - Every cycle ends with a REGENERATION_CYCLE_EXECUTED audit event
      carrying the totals and the per-record errors.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from settlement_config.schema import SettlementConfig
from settlement_kernel.db.engine import transaction_scope
from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.logging_config import LogContext, get_logger
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.services.auditor_service import AuditorService
from settlement_kernel.services.reconciliation_ledger import SYSTEM_ACTOR_ID

from settlement_batch.domain.types import BatchRunResult
from settlement_batch.services.executor import BatchExecutor
from settlement_batch.services.scheduler import RegenerationScheduler
from settlement_batch.tasks.base import TaskRegistry
from settlement_batch.tasks.regeneration import RegenerationTask

logger = get_logger("batch.orchestrator")

REGENERATION_JOB_NAME = "regeneration"


def build_task_registry(config: SettlementConfig, clock: Clock | None = None) -> TaskRegistry:
    """Create a TaskRegistry pre-loaded with every batch task."""
    registry = TaskRegistry()
    registry.register(RegenerationTask(config, clock))
    return registry


class BatchOrchestrator:
    """DI container for the batch processing system.

    Non-goals:
        - Does NOT start the scheduler automatically; the caller decides.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: SettlementConfig,
        clock: Clock | None = None,
        task_registry: TaskRegistry | None = None,
        actor_id: UUID | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._clock = clock or SystemClock()
        self._task_registry = (
            task_registry if task_registry is not None
            else build_task_registry(config, self._clock)
        )
        self._actor_id = actor_id or SYSTEM_ACTOR_ID

    @property
    def task_registry(self) -> TaskRegistry:
        return self._task_registry

    def create_executor(self, session: Session) -> BatchExecutor:
        return BatchExecutor(
            session=session,
            task_registry=self._task_registry,
            clock=self._clock,
            commit_per_item=True,
        )

    def create_scheduler(self, interval_seconds: float | None = None) -> RegenerationScheduler:
        return RegenerationScheduler(
            run_cycle=self.run_regeneration,
            interval_seconds=(
                interval_seconds if interval_seconds is not None
                else self._config.regeneration.interval_seconds
            ),
        )

    def default_idempotency_key(self) -> str:
        # One cycle per minute; a second trigger in the same minute is rejected.
        return f"regeneration-{self._clock.now().strftime('%Y%m%d-%H%M')}"

    def run_regeneration(
        self,
        project_id: UUID | None = None,
        limit: int | None = None,
        idempotency_key: str | None = None,
    ) -> BatchRunResult:
        """Submit and execute one regeneration job.

        Raises:
            BatchIdempotencyError: ``idempotency_key`` was already used.
        """
        task_type = RegenerationTask(self._config).task_type
        parameters: dict[str, Any] = {"actor_id": str(self._actor_id)}
        if project_id is not None:
            parameters["project_id"] = str(project_id)
        if limit is not None:
            parameters["limit"] = limit
        key = idempotency_key or self.default_idempotency_key()

        with LogContext.bind(actor_id=str(self._actor_id)):
            with transaction_scope(self._session_factory) as session:
                executor = self.create_executor(session)
                job = executor.submit_job(
                    job_name=REGENERATION_JOB_NAME,
                    task_type=task_type,
                    idempotency_key=key,
                    actor_id=self._actor_id,
                    parameters=parameters,
                )
                result = executor.execute_job(job.job_id, self._actor_id)
                self._record_cycle(session, result)

        logger.info(
            "regeneration_cycle_executed",
            extra={
                "job_id": str(result.job_id),
                "status": result.status.value,
                "processed": result.succeeded,
                "failed": result.failed,
                "skipped": result.skipped,
            },
        )
        return result

    def _record_cycle(self, session: Session, result: BatchRunResult) -> None:
        total_amount = sum(
            (Decimal(r.result_data["amount"]) for r in result.succeeded_results if r.result_data),
            Decimal("0"),
        )
        errors = [
            {"revenue_record_id": r.item_key, "code": r.error_code, "message": r.error_message}
            for r in result.failed_results
        ]
        AuditorService(session, self._clock).record(
            entity_type="BatchJob",
            entity_id=result.job_id,
            action=AuditAction.REGENERATION_CYCLE_EXECUTED,
            actor_id=self._actor_id,
            new_status=result.status.value,
            detail={
                "records_found": result.total_items,
                "records_processed": result.succeeded,
                "records_failed": result.failed,
                "records_skipped": result.skipped,
                "total_amount": total_amount,
                "errors": errors,
            },
        )
