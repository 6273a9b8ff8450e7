"""Batch execution and scheduling services."""

from settlement_batch.services.executor import BatchExecutor
from settlement_batch.services.scheduler import RegenerationScheduler

__all__ = [
    "BatchExecutor",
    "RegenerationScheduler",
]
