"""
settlement_batch.domain.types -- Frozen dataclasses for the batch system.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class BatchJobStatus(str, Enum):
    """Job-level lifecycle status."""

    PENDING = "pending"  # Created, not yet started
    RUNNING = "running"
    COMPLETED = "completed"  # Every item succeeded (or there were none)
    FAILED = "failed"  # No item succeeded
    CANCELLED = "cancelled"
    PARTIALLY_COMPLETED = "partially_completed"


class BatchItemStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"  # e.g. already processed by a concurrent run


@dataclass(frozen=True)
class BatchJob:
    """Immutable snapshot of a batch job.

    ``idempotency_key`` is UNIQUE: re-submitting the same key is rejected
    rather than creating a duplicate run.
    """

    job_id: UUID
    job_name: str
    task_type: str  # Registered task key (e.g., "regeneration.revenue_split")
    status: BatchJobStatus
    idempotency_key: str
    parameters: dict[str, Any] = field(default_factory=dict)
    total_items: int = 0
    succeeded_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_by: UUID | None = None
    error_summary: str | None = None
    seq: int | None = None


@dataclass(frozen=True)
class BatchItemResult:
    """Result of processing one item in its own SAVEPOINT."""

    item_index: int
    item_key: str  # Business identifier (e.g., revenue_record_id)
    status: BatchItemStatus
    error_code: str | None = None
    error_message: str | None = None
    result_data: dict[str, Any] | None = None
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class BatchRunResult:
    """Returned by ``BatchExecutor.execute_job()``."""

    job_id: UUID
    status: BatchJobStatus
    total_items: int
    succeeded: int
    failed: int
    skipped: int
    item_results: tuple[BatchItemResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @property
    def succeeded_results(self) -> tuple[BatchItemResult, ...]:
        return tuple(r for r in self.item_results if r.status == BatchItemStatus.SUCCEEDED)

    @property
    def failed_results(self) -> tuple[BatchItemResult, ...]:
        return tuple(r for r in self.item_results if r.status == BatchItemStatus.FAILED)
