"""Client records state store with an online migration to a per-record mirror."""

from .config import RecordsStoreConfig, build_records_service
from .contracts import ReadResult, RecordsErrorKind, RecordsFailure, RecordsStoreError, WriteOutcome
from .dual_read import DualReadComparator
from .dual_write import DualWriteCoordinator
from .mirror import RecordMirror
from .patch import DeleteOperation, UpsertOperation, apply_patch_operations
from .repository import RecordsRepository
from .revision import NOT_PROVIDED, check_token
from .router import MigrationPhase, MigrationRouter, RoutePlan
from .service import RecordsService

__all__ = [
    "DeleteOperation",
    "DualReadComparator",
    "DualWriteCoordinator",
    "MigrationPhase",
    "MigrationRouter",
    "NOT_PROVIDED",
    "ReadResult",
    "RecordMirror",
    "RecordsErrorKind",
    "RecordsFailure",
    "RecordsRepository",
    "RecordsService",
    "RecordsStoreConfig",
    "RecordsStoreError",
    "RoutePlan",
    "UpsertOperation",
    "WriteOutcome",
    "apply_patch_operations",
    "build_records_service",
    "check_token",
]
