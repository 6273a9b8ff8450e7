"""
settlement_batch -- Batch processing and the regeneration job.

Provides a batch execution engine with per-item SAVEPOINT isolation, item
result tracking, and an in-process interval scheduler.  The regeneration
task splits verified revenue across holders and capital pools, one revenue
record per item.

Architecture:
    settlement_batch/ is a top-level package.  Nothing in kernel/,
    engines/, config/, or services/ imports from settlement_batch, apart
    from db.engine.create_tables() registering the batch tables.

Invariants:
    - SAVEPOINT isolation per item: one failed record does not abort the run.
    - Job idempotency: UNIQUE idempotency_key.
    - Job sequence allocated via SequenceService.
    - Clock injection: no datetime.now() calls.
    - One running instance per job (row lock on the job).
    - Graceful shutdown: the scheduler finishes the current run before stopping.
"""
