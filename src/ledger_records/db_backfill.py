from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

from .contracts import MirrorCheck, ReconcileSummary
from .hashing import record_id
from .mirror import RecordMirror
from .repository import DEFAULT_STATE_ROW_ID, RecordsRepository
from .revision import format_revision_token, utc_now


logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    state_row_id: int
    source_state_updated_at: Optional[str]
    dry_run: bool
    delete_missing: bool
    summary: ReconcileSummary = field(default_factory=ReconcileSummary)
    skipped_without_id: int = 0
    check: Optional[MirrorCheck] = None

    @property
    def in_sync(self) -> bool:
        if self.dry_run:
            return False
        return bool(self.check is not None and self.check.in_sync)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": "dry_run" if self.dry_run else ("ok" if self.in_sync else "mismatch"),
            "state_row_id": self.state_row_id,
            "source_state_updated_at": self.source_state_updated_at,
            "dry_run": self.dry_run,
            "delete_missing": self.delete_missing,
            "skipped_without_id": self.skipped_without_id,
        }
        out.update(self.summary.to_dict())
        if self.check is not None:
            out["check"] = self.check.to_dict()
        return out


def backfill_mirror(
    repository: RecordsRepository,
    *,
    mirror: Optional[RecordMirror] = None,
    dry_run: bool = False,
    delete_missing: bool = True,
) -> BackfillResult:
    """Copy the legacy record set into the mirror table under the state row lock."""
    mirror = mirror or RecordMirror()
    with repository.write_transaction() as tx:
        state = tx.lock_state()
        records = [dict(item) for item in state.records]
        source_updated_at = format_revision_token(state.updated_at) or utc_now().isoformat(timespec="microseconds")
        result = BackfillResult(
            state_row_id=repository.state_row_id,
            source_state_updated_at=state.updated_at,
            dry_run=bool(dry_run),
            delete_missing=bool(delete_missing),
            skipped_without_id=sum(1 for item in records if not record_id(item)),
        )
        result.summary = mirror.reconcile(
            tx,
            records,
            source_updated_at,
            delete_missing=delete_missing,
            dry_run=dry_run,
        )
        if not dry_run:
            result.check = mirror.verify(tx, records)

    logger.info("records mirror backfill finished: %s", result.to_dict())
    return result


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill client_records_v2 from the legacy records state row")
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
    parser.add_argument(
        "--source-row-id",
        type=int,
        default=DEFAULT_STATE_ROW_ID,
        help="Legacy state row id",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing",
    )
    parser.add_argument(
        "--keep-missing",
        action="store_true",
        help="Do not delete mirror rows that are absent from the legacy set",
    )
    return parser.parse_args(argv)


def build_repository_from_args(args: argparse.Namespace) -> RecordsRepository:
    source_row_id = DEFAULT_STATE_ROW_ID if args.source_row_id is None else int(args.source_row_id)
    if source_row_id <= 0:
        raise ValueError("source row id must be a positive integer")
    if args.backend == "postgres":
        return RecordsRepository(
            backend="postgres",
            postgres_dsn=str(args.postgres_dsn or "").strip(),
            state_row_id=source_row_id,
        )
    return RecordsRepository(
        backend="sqlite",
        sqlite_path=str(args.sqlite_path or "").strip(),
        state_row_id=source_row_id,
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    repository = build_repository_from_args(args)
    repository.init_schema()
    result = backfill_mirror(repository, dry_run=bool(args.dry_run), delete_missing=not args.keep_missing)
    print(json.dumps(result.to_dict(), ensure_ascii=True, indent=2))
    if result.dry_run:
        return 0
    return 0 if result.in_sync else 2


if __name__ == "__main__":
    raise SystemExit(main())
