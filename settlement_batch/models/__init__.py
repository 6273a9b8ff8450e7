"""
settlement_batch.models -- ORM models for batch processing persistence.

Architecture: settlement_batch/models.  Imports from settlement_kernel.db.base only.
"""

from settlement_batch.models.batch import BatchItemModel, BatchJobModel

__all__ = [
    "BatchItemModel",
    "BatchJobModel",
]
