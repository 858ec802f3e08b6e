from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence


MIGRATIONS_TABLE = "schema_migrations"


def _require_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except Exception as exc:
        raise RuntimeError("psycopg is required for postgres migrations") from exc
    return psycopg


def default_migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[2] / "migrations")


@dataclass
class PostgresMigrationRunner:
    """Applies ``migrations/*.sql`` in name order, each file at most once."""

    dsn: str
    migrations_dir: str

    def migration_files(self) -> List[Path]:
        dir_path = Path(self.migrations_dir)
        if not dir_path.exists():
            raise RuntimeError(f"migrations dir not found: {dir_path}")
        return sorted([path for path in dir_path.glob("*.sql") if path.is_file()])

    def apply_all(self, *, dry_run: bool = False) -> Dict[str, Any]:
        psycopg = _require_psycopg()
        files = self.migration_files()
        applied: List[str] = []
        pending: List[str] = []

        with psycopg.connect(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
                        version TEXT PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute(f"SELECT version FROM {MIGRATIONS_TABLE}")
                known = {str(row[0]) for row in cur.fetchall()}

            for path in files:
                version = path.name
                if version in known:
                    continue
                pending.append(version)
                if dry_run:
                    continue
                with conn.cursor() as cur:
                    cur.execute(path.read_text(encoding="utf-8"))
                    cur.execute(f"INSERT INTO {MIGRATIONS_TABLE} (version) VALUES (%s)", (version,))
                applied.append(version)

            if dry_run:
                conn.rollback()
            else:
                conn.commit()

        return {
            "status": "ok",
            "migrations_dir": str(Path(self.migrations_dir)),
            "migrations_total": len(files),
            "pending": pending,
            "applied_now": applied,
            "dry_run": bool(dry_run),
        }


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Apply Postgres migrations for the client records store")
    parser.add_argument("--dsn", default=os.environ.get("LEDGER_DB_DSN", ""), help="Postgres DSN")
    parser.add_argument("--migrations-dir", default=default_migrations_dir(), help="Directory with *.sql migrations")
    parser.add_argument("--dry-run", action="store_true", help="List pending migrations without applying them")
    args = parser.parse_args(list(argv) if argv is not None else None)

    dsn = str(args.dsn or "").strip()
    if not dsn:
        parser.error("--dsn or LEDGER_DB_DSN is required")

    result = PostgresMigrationRunner(dsn=dsn, migrations_dir=args.migrations_dir).apply_all(dry_run=args.dry_run)
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
