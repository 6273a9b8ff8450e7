"""
BatchExecutor -- runs regeneration tasks over revenue records.

A run is submitted once per idempotency key and then executed with each
revenue record in its own SAVEPOINT: a record whose distribution raises
is rolled back and logged as a failed item while the rest of the run
carries on. The run row is locked FOR UPDATE while executing so two
workers cannot sweep the same run. Timestamps come from the injected
Clock and run numbers from SequenceService.

With ``commit_per_item`` every settled record is committed before the
next one starts, so a crash mid-run keeps the distributions already made.
"""

from __future__ import annotations

import time
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement_kernel.domain.clock import Clock, SystemClock
from settlement_kernel.exceptions import (
    BatchAlreadyRunningError,
    BatchIdempotencyError,
    BatchJobNotFoundError,
    InvalidTransitionError,
    TaskNotRegisteredError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.services.sequence_service import SequenceService

from settlement_batch.domain.types import (
    BatchItemResult,
    BatchItemStatus,
    BatchJob,
    BatchJobStatus,
    BatchRunResult,
)
from settlement_batch.models.batch import BatchItemModel, BatchJobModel
from settlement_batch.tasks.base import TaskRegistry

logger = get_logger("batch.executor")


class BatchExecutor:
    """Batch execution engine with SAVEPOINT-per-item isolation.

    Contract:
        - ``submit_job()`` creates a PENDING job.
        - ``execute_job()`` runs the full batch with per-item SAVEPOINTs.
        - ``cancel_job()`` marks a PENDING/RUNNING job as CANCELLED.
        - ``get_job()`` / ``get_job_items()`` for queries.

    Non-goals:
        - Does NOT call ``session.commit()`` unless ``commit_per_item`` is
          set; otherwise the caller controls boundaries.
        - Does NOT manage background threads; that is the scheduler's job.
    """

    def __init__(
        self,
        session: Session,
        task_registry: TaskRegistry,
        clock: Clock | None = None,
        sequence_service: SequenceService | None = None,
        commit_per_item: bool = False,
    ):
        self._session = session
        self._task_registry = task_registry
        self._clock = clock or SystemClock()
        self._sequence = sequence_service or SequenceService(session)
        self._commit_per_item = commit_per_item

    # -------------------------------------------------------------------------
    # Submit
    # -------------------------------------------------------------------------

    def submit_job(
        self,
        job_name: str,
        task_type: str,
        idempotency_key: str,
        actor_id: UUID,
        parameters: dict[str, Any] | None = None,
    ) -> BatchJob:
        """Create a new PENDING batch job.

        Raises:
            TaskNotRegisteredError: task_type is not in the registry.
            BatchIdempotencyError: idempotency_key is already used.
        """
        if task_type not in self._task_registry:
            raise TaskNotRegisteredError(task_type, self._task_registry.list_tasks())

        existing = self._session.execute(
            select(BatchJobModel).where(
                BatchJobModel.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise BatchIdempotencyError(idempotency_key, str(existing.id))

        seq = self._sequence.next_value(SequenceService.BATCH_JOB)
        now = self._clock.now()

        model = BatchJobModel(
            id=uuid4(),
            job_name=job_name,
            task_type=task_type,
            status=BatchJobStatus.PENDING.value,
            idempotency_key=idempotency_key,
            parameters=parameters or None,
            seq=seq,
            created_at=now,
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "batch_job_submitted",
            extra={
                "job_id": str(model.id),
                "job_name": job_name,
                "task_type": task_type,
                "idempotency_key": idempotency_key,
                "seq": seq,
            },
        )
        return model.snapshot()

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    def _lock_job(self, job_id: UUID) -> BatchJobModel:
        job_model = self._session.execute(
            select(BatchJobModel)
            .where(BatchJobModel.id == job_id)
            .with_for_update()
        ).scalar_one_or_none()
        if job_model is None:
            raise BatchJobNotFoundError(str(job_id))
        return job_model

    def _checkpoint(self) -> None:
        if self._commit_per_item:
            self._session.commit()
        else:
            self._session.flush()

    def execute_job(self, job_id: UUID, actor_id: UUID) -> BatchRunResult:
        """Execute a batch job with SAVEPOINT-per-item isolation.

        Raises:
            BatchJobNotFoundError: job_id does not exist.
            BatchAlreadyRunningError: The job is not PENDING.
        """
        start_time = time.monotonic()

        job_model = self._lock_job(job_id)
        if job_model.status != BatchJobStatus.PENDING.value:
            raise BatchAlreadyRunningError(job_model.job_name, str(job_id))

        task = self._task_registry.get(job_model.task_type)
        parameters = job_model.parameters or {}

        now = self._clock.now()
        job_model.status = BatchJobStatus.RUNNING.value
        job_model.started_at = now
        self._checkpoint()
        logger.info(
            "batch_job_started",
            extra={"job_id": str(job_id), "task_type": job_model.task_type},
        )

        try:
            items = task.prepare_items(parameters=parameters, session=self._session, as_of=now)
        except Exception as exc:
            logger.exception("batch_prepare_failed", extra={"job_id": str(job_id)})
            return self._fail_job(job_model, f"prepare_items failed: {exc}", start_time)

        job_model.total_items = len(items)
        self._session.flush()

        succeeded = 0
        failed = 0
        skipped = 0
        item_results: list[BatchItemResult] = []

        for batch_item in items:
            item_start = time.monotonic()
            item_started_at = self._clock.now()

            savepoint = self._session.begin_nested()
            try:
                result = task.execute_item(
                    item=batch_item,
                    parameters=parameters,
                    session=self._session,
                    as_of=now,
                )
                if result.status == BatchItemStatus.SUCCEEDED:
                    savepoint.commit()
                    succeeded += 1
                else:
                    savepoint.rollback()
                    if result.status == BatchItemStatus.SKIPPED:
                        skipped += 1
                    else:
                        failed += 1

                item_result = BatchItemResult(
                    item_index=batch_item.item_index,
                    item_key=batch_item.item_key,
                    status=result.status,
                    error_code=result.error_code,
                    error_message=result.error_message,
                    result_data=result.result_data,
                    duration_ms=int((time.monotonic() - item_start) * 1000),
                    started_at=item_started_at,
                    completed_at=self._clock.now(),
                )

            except Exception as exc:
                savepoint.rollback()
                failed += 1
                logger.exception(
                    "batch_item_unhandled_exception",
                    extra={"job_id": str(job_id), "item_key": batch_item.item_key},
                )
                item_result = BatchItemResult(
                    item_index=batch_item.item_index,
                    item_key=batch_item.item_key,
                    status=BatchItemStatus.FAILED,
                    error_code="UNHANDLED_EXCEPTION",
                    error_message=str(exc),
                    duration_ms=int((time.monotonic() - item_start) * 1000),
                    started_at=item_started_at,
                    completed_at=self._clock.now(),
                )

            if item_result.status == BatchItemStatus.FAILED:
                logger.warning(
                    "batch_item_failed",
                    extra={
                        "job_id": str(job_id),
                        "item_key": batch_item.item_key,
                        "error_code": item_result.error_code,
                    },
                )

            item_results.append(item_result)

            item_model = BatchItemModel(
                job_id=job_id,
                item_index=item_result.item_index,
                item_key=item_result.item_key,
                status=item_result.status.value,
                error_code=item_result.error_code,
                error_message=item_result.error_message,
                result_data=item_result.result_data,
                duration_ms=item_result.duration_ms,
                started_at=item_result.started_at,
                completed_at=item_result.completed_at,
                created_at=self._clock.now(),
                created_by_id=actor_id,
            )
            self._session.add(item_model)

            job_model.succeeded_items = succeeded
            job_model.failed_items = failed
            job_model.skipped_items = skipped
            self._checkpoint()

        if failed == 0:
            job_model.status = BatchJobStatus.COMPLETED.value
        elif succeeded == 0 and skipped == 0:
            job_model.status = BatchJobStatus.FAILED.value
        else:
            job_model.status = BatchJobStatus.PARTIALLY_COMPLETED.value

        completed_at = self._clock.now()
        job_model.completed_at = completed_at
        total_duration = int((time.monotonic() - start_time) * 1000)
        if failed > 0:
            job_model.error_summary = f"{failed} item(s) failed"
        self._checkpoint()

        logger.info(
            "batch_job_finished",
            extra={
                "job_id": str(job_id),
                "status": job_model.status,
                "succeeded": succeeded,
                "failed": failed,
                "skipped": skipped,
                "duration_ms": total_duration,
            },
        )

        return BatchRunResult(
            job_id=job_id,
            status=BatchJobStatus(job_model.status),
            total_items=len(items),
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            item_results=tuple(item_results),
            started_at=job_model.started_at,
            completed_at=completed_at,
            duration_ms=total_duration,
        )

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    def cancel_job(self, job_id: UUID, reason: str, actor_id: UUID) -> BatchJob:
        """Cancel a PENDING or RUNNING job.

        Raises:
            BatchJobNotFoundError: job_id does not exist.
            InvalidTransitionError: The job already finished.
        """
        job_model = self._lock_job(job_id)
        if job_model.status not in (
            BatchJobStatus.PENDING.value,
            BatchJobStatus.RUNNING.value,
        ):
            raise InvalidTransitionError(
                "BatchJob", str(job_id), job_model.status, BatchJobStatus.CANCELLED.value,
            )

        job_model.status = BatchJobStatus.CANCELLED.value
        job_model.completed_at = self._clock.now()
        job_model.error_summary = f"Cancelled: {reason}"
        job_model.updated_by_id = actor_id
        self._session.flush()

        logger.info("batch_job_cancelled", extra={"job_id": str(job_id), "reason": reason})
        return job_model.snapshot()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> BatchJob:
        model = self._session.get(BatchJobModel, job_id)
        if model is None:
            raise BatchJobNotFoundError(str(job_id))
        return model.snapshot()

    def get_job_items(self, job_id: UUID) -> tuple[BatchItemResult, ...]:
        models = self._session.execute(
            select(BatchItemModel)
            .where(BatchItemModel.job_id == job_id)
            .order_by(BatchItemModel.item_index)
        ).scalars().all()
        return tuple(m.snapshot() for m in models)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _fail_job(
        self,
        job_model: BatchJobModel,
        error_summary: str,
        start_time: float,
    ) -> BatchRunResult:
        job_model.status = BatchJobStatus.FAILED.value
        job_model.completed_at = self._clock.now()
        job_model.error_summary = error_summary
        self._checkpoint()

        return BatchRunResult(
            job_id=job_model.id,
            status=BatchJobStatus.FAILED,
            total_items=0,
            succeeded=0,
            failed=0,
            skipped=0,
            started_at=job_model.started_at,
            completed_at=job_model.completed_at,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
