from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .dual_read import DEFAULT_SAMPLE_LIMIT, DualReadComparator
from .dual_write import DualWriteCoordinator
from .mirror import RecordMirror
from .repository import RecordsRepository
from .router import MigrationPhase, MigrationRouter
from .schema import DEFAULT_MAX_PATCH_OPERATIONS, DEFAULT_MAX_RECORDS
from .service import RecordsService


def env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class RecordsStoreConfig:
    db_backend: str
    db_path: str
    db_dsn: str
    migration_phase: MigrationPhase
    dual_read_compare: bool
    legacy_mirror: bool
    compare_sample_limit: int
    put_max_count: int
    patch_max_operations: int
    sqlite_busy_timeout_seconds: int

    @classmethod
    def from_env(cls) -> "RecordsStoreConfig":
        root = Path(__file__).resolve().parents[2]
        db_backend = os.environ.get("LEDGER_DB_BACKEND", "sqlite").strip().lower() or "sqlite"
        if db_backend not in {"sqlite", "postgres"}:
            db_backend = "sqlite"
        db_path = os.environ.get("LEDGER_DB_PATH", str(root / "runtime" / "ledger_records.sqlite3"))
        db_dsn = os.environ.get("LEDGER_DB_DSN", "").strip()

        legacy_mirror = env_bool("LEDGER_RECORDS_LEGACY_MIRROR", env_bool("LEGACY_MIRROR", True))
        phase: Optional[MigrationPhase]
        try:
            phase = MigrationPhase.parse(os.environ.get("LEDGER_RECORDS_MIGRATION_PHASE", ""))
        except ValueError:
            phase = None
        if phase is None:
            phase = MigrationPhase.from_flags(
                dual_write=env_bool("DUAL_WRITE_V2", False),
                read_mirror=env_bool("READ_V2", False),
                write_mirror=env_bool("WRITE_V2", False),
                legacy_mirror=legacy_mirror,
            )

        return cls(
            db_backend=db_backend,
            db_path=db_path,
            db_dsn=db_dsn,
            migration_phase=phase,
            dual_read_compare=env_bool("LEDGER_RECORDS_DUAL_READ_COMPARE", env_bool("DUAL_READ_COMPARE", False)),
            legacy_mirror=legacy_mirror,
            compare_sample_limit=_env_int("LEDGER_RECORDS_COMPARE_SAMPLE_LIMIT", DEFAULT_SAMPLE_LIMIT),
            put_max_count=_env_int("LEDGER_RECORDS_PUT_MAX_COUNT", DEFAULT_MAX_RECORDS),
            patch_max_operations=_env_int("LEDGER_RECORDS_PATCH_MAX_OPERATIONS", DEFAULT_MAX_PATCH_OPERATIONS),
            sqlite_busy_timeout_seconds=_env_int("LEDGER_SQLITE_BUSY_TIMEOUT_SECONDS", 30),
        )


def build_repository(config: RecordsStoreConfig) -> RecordsRepository:
    if config.db_backend == "postgres":
        return RecordsRepository(backend="postgres", postgres_dsn=config.db_dsn)
    return RecordsRepository(
        backend="sqlite",
        sqlite_path=config.db_path,
        busy_timeout_seconds=config.sqlite_busy_timeout_seconds,
    )


def build_records_service(config: Optional[RecordsStoreConfig] = None, *, init_schema: bool = True) -> RecordsService:
    config = config or RecordsStoreConfig.from_env()
    repository = build_repository(config)
    if init_schema:
        repository.init_schema()
    router = MigrationRouter(
        config.migration_phase,
        dual_read_compare=config.dual_read_compare,
        legacy_mirror=config.legacy_mirror,
    )
    mirror = RecordMirror()
    return RecordsService(
        repository=repository,
        router=router,
        mirror=mirror,
        coordinator=DualWriteCoordinator(repository=repository, router=router, mirror=mirror),
        comparator=DualReadComparator(repository=repository, sample_limit=config.compare_sample_limit),
        max_records=config.put_max_count,
        max_patch_operations=config.patch_max_operations,
    )
