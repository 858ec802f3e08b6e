from __future__ import annotations

import argparse
import json
import os
from typing import Any, Dict, Optional, Sequence

from .dual_read import compare_snapshots
from .hashing import record_id
from .repository import DEFAULT_STATE_ROW_ID, RecordsRepository


DEFAULT_MAX_DIFF_ITEMS = 25
MAX_DIFF_ITEMS = 500


def _legacy_id_stats(records: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    missing_id = 0
    duplicate_id = 0
    seen: set[str] = set()
    for record in records:
        rid = record_id(record)
        if not rid:
            missing_id += 1
            continue
        if rid in seen:
            duplicate_id += 1
            continue
        seen.add(rid)
    return {"skipped_missing_id_count": missing_id, "duplicate_id_count": duplicate_id}


def build_parity_report(
    repository: RecordsRepository,
    *,
    sample_limit: int = DEFAULT_MAX_DIFF_ITEMS,
) -> Dict[str, Any]:
    """Compare the legacy state row with the mirror table in one consistent snapshot."""
    safe_sample_limit = max(1, min(int(sample_limit or DEFAULT_MAX_DIFF_ITEMS), MAX_DIFF_ITEMS))
    with repository.read_snapshot() as tx:
        state = tx.read_state()
        mirror_rows = tx.list_mirror_rows()

    compare = compare_snapshots(
        state.records,
        mirror_rows,
        source="db_parity",
        sample_limit=safe_sample_limit,
        max_sample_limit=MAX_DIFF_ITEMS,
    )
    report: Dict[str, Any] = {
        "status": "ok" if compare["status"] == "match" else "mismatch",
        "backend": repository.backend,
        "state_table": repository.state_table,
        "mirror_table": repository.mirror_table,
        "state_row_id": repository.state_row_id,
        "state_row_exists": state.exists,
        "source_state_updated_at": state.updated_at,
        "sample_limit": safe_sample_limit,
        "counts_match": compare["legacy_count"] == compare["mirror_count"],
        "checksums_match": compare["legacy_checksum"] == compare["mirror_checksum"],
    }
    report.update(_legacy_id_stats(state.records))
    report.update({key: value for key, value in compare.items() if key not in {"status", "source"}})
    return report


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify client_records_v2 against the legacy records state row")
    parser.add_argument(
        "--backend",
        default=str(os.environ.get("LEDGER_DB_BACKEND", "sqlite")),
        choices=["sqlite", "postgres"],
        help="Storage backend (defaults to LEDGER_DB_BACKEND)",
    )
    parser.add_argument(
        "--sqlite-path",
        default=str(os.environ.get("LEDGER_DB_PATH", "")),
        help="Path to SQLite database (defaults to LEDGER_DB_PATH)",
    )
    parser.add_argument(
        "--postgres-dsn",
        default=str(os.environ.get("LEDGER_DB_DSN", "")),
        help="Postgres DSN (defaults to LEDGER_DB_DSN)",
    )
    parser.add_argument("--source-row-id", type=int, default=DEFAULT_STATE_ROW_ID, help="Legacy state row id")
    parser.add_argument(
        "--max-diff-items",
        type=int,
        default=DEFAULT_MAX_DIFF_ITEMS,
        help=f"Sample ids per mismatch category (1..{MAX_DIFF_ITEMS})",
    )
    parser.add_argument("--no-fail", action="store_true", help="Exit 0 even when a mismatch is found")
    args = parser.parse_args(argv)
    if args.source_row_id <= 0:
        parser.error("--source-row-id must be a positive integer")
    if not 1 <= args.max_diff_items <= MAX_DIFF_ITEMS:
        parser.error(f"--max-diff-items must be in range 1..{MAX_DIFF_ITEMS}")
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if args.backend == "postgres":
        repository = RecordsRepository(
            backend="postgres",
            postgres_dsn=str(args.postgres_dsn or "").strip(),
            state_row_id=args.source_row_id,
        )
    else:
        repository = RecordsRepository(
            backend="sqlite",
            sqlite_path=str(args.sqlite_path or "").strip(),
            state_row_id=args.source_row_id,
        )
    repository.init_schema()
    report = build_parity_report(repository, sample_limit=args.max_diff_items)
    print(json.dumps(report, ensure_ascii=True, indent=2))
    if report["status"] == "ok" or args.no_fail:
        return 0
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
