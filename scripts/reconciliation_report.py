#!/usr/bin/env python3
"""
List unresolved reconciliation records, or resolve one.

A reconciliation record means an external transfer succeeded while the
local confirmation failed.  Repair the local state first, then resolve.

Usage:
  python scripts/reconciliation_report.py
  python scripts/reconciliation_report.py --json
  python scripts/reconciliation_report.py --resolve <record-id> --by <actor-id> --notes "..."
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from uuid import UUID

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_DB_URL = "sqlite:///settlement.db"

W = 100


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0])
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL", DEFAULT_DB_URL),
        help="SQLAlchemy URL (default: $DATABASE_URL or %(default)s)",
    )
    parser.add_argument("--json", action="store_true", help="Emit JSON instead of a table")
    parser.add_argument("--resolve", type=UUID, default=None, metavar="RECORD_ID")
    parser.add_argument("--by", type=UUID, default=None, metavar="ACTOR_ID")
    parser.add_argument("--notes", default=None)
    args = parser.parse_args(argv)
    if args.resolve is not None and (args.by is None or not args.notes):
        parser.error("--resolve requires --by and --notes")
    return args


def _row(record) -> dict:
    return {
        "id": str(record.id),
        "detected_at": record.detected_at.isoformat(),
        "severity": record.severity.value,
        "error_type": record.error_type,
        "entity": f"{record.related_entity_type}:{record.related_entity_id}",
        "external_tx_ref": record.external_tx_ref,
        "amount": str(record.amount) if record.amount is not None else None,
        "message": record.message,
    }


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from settlement_kernel.db.engine import (
        get_session_factory,
        init_engine_from_url,
        transaction_scope,
    )
    from settlement_kernel.exceptions import SettlementKernelError
    from settlement_kernel.services.reconciliation_ledger import ReconciliationLedgerService

    init_engine_from_url(args.database_url)

    if args.resolve is not None:
        try:
            with transaction_scope(get_session_factory()) as session:
                ReconciliationLedgerService(session).resolve(args.resolve, args.by, args.notes)
        except SettlementKernelError as exc:
            print(f"  ERROR [{exc.code}]: {exc}", file=sys.stderr)
            return 1
        print(f"Resolved {args.resolve}")
        return 0

    with transaction_scope(get_session_factory()) as session:
        rows = [_row(r) for r in ReconciliationLedgerService(session).list_unresolved()]

    if args.json:
        print(json.dumps(rows, indent=2))
        return 0

    print("=" * W)
    print(f"  UNRESOLVED RECONCILIATION RECORDS: {len(rows)}")
    print("=" * W)
    for row in rows:
        print(f"  {row['detected_at']}  {row['severity'].upper():8}  {row['error_type']}")
        print(f"    id:       {row['id']}")
        print(f"    entity:   {row['entity']}")
        print(f"    tx ref:   {row['external_tx_ref'] or '-'}   amount: {row['amount'] or '-'}")
        print(f"    {row['message']}")
        print("-" * W)

    # Non-zero so a cron wrapper can alert while anything is open.
    return 1 if rows else 0


if __name__ == "__main__":
    sys.exit(main())
