"""
settlement_batch.tasks -- Regeneration task protocol, registry and tasks.

base.py stays free of kernel and service imports; the regeneration task
pulls in the ledgers it distributes through.
"""

from settlement_batch.tasks.base import (
    BatchItemInput,
    BatchTask,
    BatchTaskResult,
    TaskRegistry,
)

__all__ = [
    "BatchItemInput",
    "BatchTask",
    "BatchTaskResult",
    "TaskRegistry",
]
