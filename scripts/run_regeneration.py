#!/usr/bin/env python3
"""
Run the regeneration job: split verified, unprocessed revenue records
across token holders and capital pools.

Runs one cycle and exits, or with --loop keeps running a cycle every
``regeneration.interval_seconds`` until interrupted.

Usage:
  python scripts/run_regeneration.py
  python scripts/run_regeneration.py --project-id <uuid> --limit 50
  python scripts/run_regeneration.py --loop
  DATABASE_URL=postgresql://... python scripts/run_regeneration.py
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_DB_URL = "sqlite:///settlement.db"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0])
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL", DEFAULT_DB_URL),
        help="SQLAlchemy URL (default: $DATABASE_URL or %(default)s)",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML configuration file")
    parser.add_argument("--project-id", type=UUID, default=None, help="Only this project's revenue")
    parser.add_argument("--limit", type=int, default=None, help="Max records this cycle")
    parser.add_argument("--idempotency-key", default=None, help="Job idempotency key")
    parser.add_argument("--create-tables", action="store_true", help="Create tables first")
    parser.add_argument("--loop", action="store_true", help="Run on the configured interval")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from settlement_batch.orchestrator import BatchOrchestrator
    from settlement_config import get_active_config
    from settlement_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from settlement_kernel.exceptions import SettlementKernelError

    try:
        config = get_active_config(args.config)
        init_engine_from_url(args.database_url)
        if args.create_tables:
            create_tables()
    except SettlementKernelError as exc:
        print(f"  ERROR: {exc}", file=sys.stderr)
        return 2

    orchestrator = BatchOrchestrator(get_session_factory(), config)

    if args.loop:
        scheduler = orchestrator.create_scheduler()
        scheduler.start()
        try:
            while scheduler.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop()
        return 0

    try:
        result = orchestrator.run_regeneration(
            project_id=args.project_id,
            limit=args.limit,
            idempotency_key=args.idempotency_key,
        )
    except SettlementKernelError as exc:
        print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1

    print(f"Regeneration job {result.job_id}: {result.status.value}")
    print(
        f"  records: {result.total_items}  processed: {result.succeeded}  "
        f"failed: {result.failed}  skipped: {result.skipped}"
    )
    for item in result.failed_results:
        print(f"  FAILED {item.item_key}: [{item.error_code}] {item.error_message}")

    return 0 if result.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
