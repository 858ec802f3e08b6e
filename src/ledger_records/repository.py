from __future__ import annotations

import json
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

from .contracts import MirrorRow, StateSnapshot
from .revision import format_revision_token, utc_now


IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

DEFAULT_STATE_TABLE = "client_records_state"
DEFAULT_MIRROR_TABLE = "client_records_v2"
DEFAULT_STATE_ROW_ID = 1


def validate_identifier(name: str) -> str:
    token = str(name or "").strip().lower()
    if not IDENTIFIER_RE.match(token):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return token


def _require_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except Exception as exc:
        raise RuntimeError("psycopg is required for postgres records repository") from exc
    return psycopg


def db_unavailable_errors() -> Tuple[type, ...]:
    """Driver errors that mean the database itself cannot be reached or used."""
    errors: List[type] = [sqlite3.OperationalError]
    try:
        import psycopg  # type: ignore
    except Exception:
        return tuple(errors)
    errors.append(psycopg.OperationalError)
    return tuple(errors)


class RecordsTransaction:
    """Statements of one open transaction against the state row and the mirror table.

    Obtained from ``RecordsRepository.write_transaction()`` (row lock held) or
    ``RecordsRepository.read_snapshot()`` (consistent read, no lock).
    """

    def __init__(self, repository: "RecordsRepository", conn: Any, *, locked: bool) -> None:
        self._repo = repository
        self._conn = conn
        self.locked = locked

    @property
    def state_row_id(self) -> int:
        return self._repo.state_row_id

    def lock_state(self) -> StateSnapshot:
        """Create the singleton row if missing, then lock and return it."""
        if not self.locked:
            raise RuntimeError("lock_state requires a write transaction")
        self._repo._execute(
            self._conn,
            """
            INSERT INTO {state} (id, records, updated_at)
            VALUES ({p}, {empty_records}, NULL)
            ON CONFLICT(id) DO NOTHING
            """,
            (self.state_row_id,),
        )
        row = self._repo._fetchone(
            self._conn,
            "SELECT records, updated_at FROM {state} WHERE id = {p} {for_update}",
            (self.state_row_id,),
        )
        return self._repo._state_from_row(row)

    def read_state(self) -> StateSnapshot:
        row = self._repo._fetchone(
            self._conn,
            "SELECT records, updated_at FROM {state} WHERE id = {p}",
            (self.state_row_id,),
        )
        return self._repo._state_from_row(row)

    def write_legacy_state(self, records: Sequence[Dict[str, Any]], updated_at: str) -> None:
        self._repo._execute(
            self._conn,
            """
            INSERT INTO {state} (id, records, updated_at)
            VALUES ({p}, {p}, {p})
            ON CONFLICT(id) DO UPDATE SET
                records = EXCLUDED.records,
                updated_at = EXCLUDED.updated_at
            """,
            (self.state_row_id, self._repo._json_db(list(records)), self._repo._timestamp_db(updated_at)),
        )

    def write_revision_pointer(self, updated_at: str) -> None:
        """Advance the token without touching the legacy blob."""
        self._repo._execute(
            self._conn,
            """
            INSERT INTO {state} (id, records, updated_at)
            VALUES ({p}, {empty_records}, {p})
            ON CONFLICT(id) DO UPDATE SET updated_at = EXCLUDED.updated_at
            """,
            (self.state_row_id, self._repo._timestamp_db(updated_at)),
        )

    def list_mirror_rows(self) -> List[MirrorRow]:
        rows = self._repo._fetchall(
            self._conn,
            """
            SELECT id, record, record_hash, client_name, company_name, closed_by, created_at, position
            FROM {mirror}
            WHERE source_state_row_id = {p}
            ORDER BY position ASC, id ASC
            """,
            (self.state_row_id,),
        )
        return [self._repo._mirror_row_from_db(row) for row in rows]

    def mirror_hashes(self) -> Dict[str, str]:
        rows = self._repo._fetchall(
            self._conn,
            "SELECT id, record_hash FROM {mirror} WHERE source_state_row_id = {p}",
            (self.state_row_id,),
        )
        return {str(row["id"]): str(row["record_hash"] or "") for row in rows}

    def count_mirror_rows(self) -> int:
        row = self._repo._fetchone(
            self._conn,
            "SELECT COUNT(*) AS total FROM {mirror} WHERE source_state_row_id = {p}",
            (self.state_row_id,),
        )
        return int((row or {}).get("total") or 0)

    def insert_mirror_row(self, row: MirrorRow, *, source_state_updated_at: str) -> None:
        now = self._repo._timestamp_db(utc_now().isoformat())
        self._repo._execute(
            self._conn,
            """
            INSERT INTO {mirror} (
                id, record, record_hash, client_name, company_name, closed_by, created_at,
                position, source_state_row_id, source_state_updated_at, inserted_at, updated_at
            )
            VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p})
            """,
            (
                row.id,
                self._repo._json_db(row.record),
                row.record_hash,
                row.client_name,
                row.company_name,
                row.closed_by,
                self._repo._timestamp_db(row.created_at),
                int(row.position),
                self.state_row_id,
                self._repo._timestamp_db(source_state_updated_at),
                now,
                now,
            ),
        )

    def update_mirror_row(self, row: MirrorRow, *, source_state_updated_at: str) -> None:
        self._repo._execute(
            self._conn,
            """
            UPDATE {mirror} SET
                record = {p},
                record_hash = {p},
                client_name = {p},
                company_name = {p},
                closed_by = {p},
                created_at = {p},
                position = {p},
                source_state_updated_at = {p},
                updated_at = {p}
            WHERE id = {p} AND source_state_row_id = {p}
            """,
            (
                self._repo._json_db(row.record),
                row.record_hash,
                row.client_name,
                row.company_name,
                row.closed_by,
                self._repo._timestamp_db(row.created_at),
                int(row.position),
                self._repo._timestamp_db(source_state_updated_at),
                self._repo._timestamp_db(utc_now().isoformat()),
                row.id,
                self.state_row_id,
            ),
        )

    def update_mirror_position(self, row_id: str, position: int) -> None:
        self._repo._execute(
            self._conn,
            "UPDATE {mirror} SET position = {p} WHERE id = {p} AND source_state_row_id = {p}",
            (int(position), str(row_id), self.state_row_id),
        )

    def delete_mirror_rows(self, ids: Iterable[str]) -> int:
        deleted = 0
        for row_id in ids:
            deleted += self._repo._execute(
                self._conn,
                "DELETE FROM {mirror} WHERE id = {p} AND source_state_row_id = {p}",
                (str(row_id), self.state_row_id),
            )
        return deleted

    @contextmanager
    def savepoint(self, name: str) -> Generator[None, None, None]:
        """Nested scope: an exception rolls back only to the savepoint, then re-raises."""
        safe_name = validate_identifier(name)
        self._repo._execute(self._conn, f"SAVEPOINT {safe_name}", ())
        try:
            yield
        except Exception:
            self._repo._execute(self._conn, f"ROLLBACK TO SAVEPOINT {safe_name}", ())
            self._repo._execute(self._conn, f"RELEASE SAVEPOINT {safe_name}", ())
            raise
        self._repo._execute(self._conn, f"RELEASE SAVEPOINT {safe_name}", ())


class RecordsRepository:
    """Storage for the legacy state row and the per-record mirror, on SQLite or Postgres.

    Every transaction gets its own connection. Writers serialize on the
    singleton state row (``BEGIN IMMEDIATE`` on SQLite, ``FOR UPDATE`` on
    Postgres); snapshot readers never wait for them.
    """

    def __init__(
        self,
        *,
        backend: str = "sqlite",
        sqlite_path: Optional[str] = None,
        postgres_dsn: Optional[str] = None,
        state_table: str = DEFAULT_STATE_TABLE,
        mirror_table: str = DEFAULT_MIRROR_TABLE,
        state_row_id: int = DEFAULT_STATE_ROW_ID,
        busy_timeout_seconds: float = 30.0,
    ) -> None:
        normalized = str(backend or "sqlite").strip().lower()
        if normalized not in {"sqlite", "postgres"}:
            normalized = "sqlite"
        self.backend = normalized
        self.sqlite_path = sqlite_path
        self.postgres_dsn = postgres_dsn
        self.state_table = validate_identifier(state_table)
        self.mirror_table = validate_identifier(mirror_table)
        self.state_row_id = int(state_row_id) if int(state_row_id) > 0 else DEFAULT_STATE_ROW_ID
        self.busy_timeout_seconds = max(0.1, float(busy_timeout_seconds))

        if self.backend == "sqlite":
            if not self.sqlite_path:
                raise ValueError("sqlite_path is required for sqlite records repository")
            Path(self.sqlite_path).parent.mkdir(parents=True, exist_ok=True)
        else:
            if not self.postgres_dsn:
                raise ValueError("postgres_dsn is required for postgres records repository")
            _require_psycopg()

    def init_schema(self) -> None:
        if self.backend == "sqlite":
            conn = self._connect_sqlite()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(self._sqlite_schema())
            finally:
                conn.close()
            return
        psycopg = _require_psycopg()
        with psycopg.connect(self.postgres_dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(self._postgres_schema())
            conn.commit()

    @contextmanager
    def write_transaction(self) -> Generator[RecordsTransaction, None, None]:
        if self.backend == "sqlite":
            conn = self._connect_sqlite()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield RecordsTransaction(self, conn, locked=True)
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            finally:
                conn.close()
            return

        psycopg = _require_psycopg()
        with psycopg.connect(self.postgres_dsn) as conn:
            try:
                yield RecordsTransaction(self, conn, locked=True)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    @contextmanager
    def read_snapshot(self) -> Generator[RecordsTransaction, None, None]:
        if self.backend == "sqlite":
            conn = self._connect_sqlite()
            try:
                conn.execute("BEGIN")
                try:
                    yield RecordsTransaction(self, conn, locked=False)
                finally:
                    conn.execute("ROLLBACK")
            finally:
                conn.close()
            return

        psycopg = _require_psycopg()
        with psycopg.connect(self.postgres_dsn) as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY")
                yield RecordsTransaction(self, conn, locked=False)
            finally:
                conn.rollback()

    def _connect_sqlite(self) -> sqlite3.Connection:
        assert self.sqlite_path is not None
        conn = sqlite3.connect(
            self.sqlite_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, conn: Any, template_sql: str, params: tuple[Any, ...]) -> int:
        sql = self._format_sql(template_sql)
        if self.backend == "sqlite":
            cur = conn.execute(sql, params)
            return max(0, int(cur.rowcount or 0))
        with conn.cursor() as cur:
            cur.execute(sql, params or None)
            return max(0, int(cur.rowcount or 0))

    def _fetchone(self, conn: Any, template_sql: str, params: tuple[Any, ...]) -> Optional[Dict[str, Any]]:
        sql = self._format_sql(template_sql)
        if self.backend == "sqlite":
            row = conn.execute(sql, params).fetchone()
            return dict(row) if row else None
        psycopg = _require_psycopg()
        with conn.cursor(row_factory=psycopg.rows.dict_row) as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        return dict(row) if row else None

    def _fetchall(self, conn: Any, template_sql: str, params: tuple[Any, ...]) -> List[Dict[str, Any]]:
        sql = self._format_sql(template_sql)
        if self.backend == "sqlite":
            return [dict(row) for row in conn.execute(sql, params).fetchall()]
        psycopg = _require_psycopg()
        with conn.cursor(row_factory=psycopg.rows.dict_row) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def _format_sql(self, template_sql: str) -> str:
        postgres = self.backend == "postgres"
        sql = template_sql.replace("{p}", "%s" if postgres else "?")
        sql = sql.replace("{state}", self.state_table)
        sql = sql.replace("{mirror}", self.mirror_table)
        sql = sql.replace("{for_update}", "FOR UPDATE" if postgres else "")
        sql = sql.replace("{empty_records}", "'[]'::jsonb" if postgres else "'[]'")
        return sql

    def _json_db(self, value: Any) -> Any:
        if self.backend == "sqlite":
            return json.dumps(value, ensure_ascii=False)
        psycopg = _require_psycopg()
        return psycopg.types.json.Json(value)

    def _timestamp_db(self, value: Any) -> Any:
        formatted = format_revision_token(value)
        if formatted is None or self.backend == "sqlite":
            return formatted
        return datetime.fromisoformat(formatted)

    @staticmethod
    def _json_value(raw: Any, default: Any) -> Any:
        if raw is None:
            return default
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                return default
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return default
        return raw

    def _state_from_row(self, row: Optional[Dict[str, Any]]) -> StateSnapshot:
        if not row:
            return StateSnapshot(records=[], updated_at=None, exists=False)
        records = self._json_value(row.get("records"), [])
        if not isinstance(records, list):
            records = []
        return StateSnapshot(
            records=[item for item in records if isinstance(item, dict)],
            updated_at=format_revision_token(row.get("updated_at")),
            exists=True,
        )

    def _mirror_row_from_db(self, row: Dict[str, Any]) -> MirrorRow:
        record = self._json_value(row.get("record"), {})
        return MirrorRow(
            id=str(row.get("id") or ""),
            record=record if isinstance(record, dict) else {},
            record_hash=str(row.get("record_hash") or "").lower(),
            client_name=str(row.get("client_name") or ""),
            company_name=str(row.get("company_name") or ""),
            closed_by=str(row.get("closed_by") or ""),
            created_at=format_revision_token(row.get("created_at")),
            position=int(row.get("position") or 0),
        )

    def _sqlite_schema(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.state_table} (
            id INTEGER PRIMARY KEY,
            records TEXT NOT NULL DEFAULT '[]',
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS {self.mirror_table} (
            id TEXT PRIMARY KEY,
            record TEXT NOT NULL,
            record_hash TEXT NOT NULL,
            client_name TEXT NOT NULL DEFAULT '',
            company_name TEXT NOT NULL DEFAULT '',
            closed_by TEXT NOT NULL DEFAULT '',
            created_at TEXT,
            position INTEGER NOT NULL DEFAULT 0,
            source_state_row_id INTEGER NOT NULL DEFAULT {DEFAULT_STATE_ROW_ID},
            source_state_updated_at TEXT,
            inserted_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_client_name ON {self.mirror_table}(client_name);
        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_company_name ON {self.mirror_table}(company_name);
        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_closed_by ON {self.mirror_table}(closed_by);
        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_source ON {self.mirror_table}(source_state_row_id, position);
        """

    def _postgres_schema(self) -> str:
        return f"""
        CREATE TABLE IF NOT EXISTS {self.state_table} (
            id BIGINT PRIMARY KEY,
            records JSONB NOT NULL DEFAULT '[]'::jsonb,
            updated_at TIMESTAMPTZ
        );

        CREATE TABLE IF NOT EXISTS {self.mirror_table} (
            id TEXT PRIMARY KEY,
            record JSONB NOT NULL,
            record_hash TEXT NOT NULL,
            client_name TEXT NOT NULL DEFAULT '',
            company_name TEXT NOT NULL DEFAULT '',
            closed_by TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ,
            position INTEGER NOT NULL DEFAULT 0,
            source_state_row_id BIGINT NOT NULL DEFAULT {DEFAULT_STATE_ROW_ID},
            source_state_updated_at TIMESTAMPTZ,
            inserted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_client_name ON {self.mirror_table}(client_name);
        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_company_name ON {self.mirror_table}(company_name);
        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_closed_by ON {self.mirror_table}(closed_by);
        CREATE INDEX IF NOT EXISTS idx_{self.mirror_table}_source ON {self.mirror_table}(source_state_row_id, position);
        """
