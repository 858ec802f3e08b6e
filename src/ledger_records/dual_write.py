from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from .contracts import RecordsErrorKind, RecordsStoreError, ReconcileSummary, StateSnapshot, WriteOutcome
from .mirror import RecordMirror
from .patch import PatchOperation, apply_patch_operations
from .repository import RecordsRepository, RecordsTransaction, db_unavailable_errors
from .revision import check_token, next_revision_token, normalize_expected_token
from .router import MigrationRouter, RoutePlan


logger = logging.getLogger(__name__)

DESYNC_MESSAGE = "Dual-write synchronization failed. client_records_v2 does not match the written records."
MIRROR_FAILED_MESSAGE = "Dual-write synchronization to client_records_v2 failed."
LEGACY_MIRROR_SAVEPOINT = "legacy_mirror_write"


class DualWriteCoordinator:
    """Writes a record set to every representation the current phase requires.

    One database transaction per write: lock the state row, check the
    caller's token, build the next set, write the primary representation,
    reconcile and verify the mirror. Any mismatch rolls the whole write back.
    """

    def __init__(
        self,
        *,
        repository: RecordsRepository,
        router: MigrationRouter,
        mirror: Optional[RecordMirror] = None,
    ) -> None:
        self._repository = repository
        self._router = router
        self._mirror = mirror or RecordMirror()
        self._unavailable_errors = db_unavailable_errors()
        self._status_lock = threading.Lock()
        self._attempts = 0
        self._success = 0
        self._conflicts = 0
        self._desync = 0
        self._failures = 0
        self._legacy_mirror_skipped = 0
        self._last_error: Optional[str] = None
        self._last_summary: Optional[Dict[str, Any]] = None

    @property
    def status(self) -> Dict[str, Any]:
        with self._status_lock:
            return {
                "attempts": self._attempts,
                "success": self._success,
                "conflicts": self._conflicts,
                "desync": self._desync,
                "failures": self._failures,
                "legacy_mirror_skipped": self._legacy_mirror_skipped,
                "last_error": self._last_error,
                "last_summary": dict(self._last_summary) if self._last_summary else None,
            }

    def write_full(self, records: Sequence[Dict[str, Any]], expected_updated_at: Any) -> WriteOutcome:
        replacement = [dict(record) for record in records]
        return self._write(
            "put",
            expected_updated_at,
            lambda current: replacement,
            applied_operations=None,
        )

    def write_patch(self, operations: Sequence[PatchOperation], expected_updated_at: Any) -> WriteOutcome:
        ops = list(operations)
        return self._write(
            "patch",
            expected_updated_at,
            lambda current: apply_patch_operations(current, ops),
            applied_operations=len(ops),
        )

    def _write(
        self,
        mode: str,
        expected_updated_at: Any,
        build_next: Callable[[List[Dict[str, Any]]], List[Dict[str, Any]]],
        *,
        applied_operations: Optional[int],
    ) -> WriteOutcome:
        with self._status_lock:
            self._attempts += 1
        try:
            normalize_expected_token(expected_updated_at)
            plan = self._router.plan()
            with self._repository.write_transaction() as tx:
                state = tx.lock_state()
                check_token(expected_updated_at, state.updated_at).raise_for_failure()

                if applied_operations == 0:
                    self._record_success(None)
                    return WriteOutcome(ok=True, updated_at=state.updated_at, applied_operations=0)

                current = self._current_records(tx, plan, state)
                next_set = build_next(current)
                updated_at = next_revision_token(state.updated_at)

                if plan.write_legacy and not plan.legacy_write_best_effort:
                    tx.write_legacy_state(next_set, updated_at)
                else:
                    tx.write_revision_pointer(updated_at)

                summary: Dict[str, Any] = {"mode": mode, "phase": plan.phase.value, "records": len(next_set)}
                if plan.write_mirror:
                    summary.update(self._write_mirror(tx, plan, mode, next_set, updated_at).to_dict())
                if plan.legacy_write_best_effort:
                    summary["legacy_mirrored"] = self._write_legacy_best_effort(tx, mode, next_set, updated_at)
        except RecordsStoreError as exc:
            self._record_failure(exc)
            raise
        except Exception as exc:
            with self._status_lock:
                self._failures += 1
                self._last_error = f"{mode}: {exc}"
            raise

        self._record_success(summary)
        return WriteOutcome(ok=True, updated_at=updated_at, applied_operations=applied_operations, summary=summary)

    def _current_records(self, tx: RecordsTransaction, plan: RoutePlan, state: StateSnapshot) -> List[Dict[str, Any]]:
        if plan.mirror_primary:
            return self._mirror.load_records(tx)
        return [dict(record) for record in state.records]

    def _write_mirror(
        self,
        tx: RecordsTransaction,
        plan: RoutePlan,
        mode: str,
        next_set: List[Dict[str, Any]],
        updated_at: str,
    ) -> ReconcileSummary:
        try:
            summary = self._mirror.reconcile(tx, next_set, updated_at)
            check = self._mirror.verify(tx, next_set)
        except RecordsStoreError:
            raise
        except self._unavailable_errors:
            raise
        except Exception as exc:
            logger.error("records %s: mirror write failed in phase %s: %s", mode, plan.phase.value, exc)
            raise RecordsStoreError(
                RecordsErrorKind.DESYNC,
                plan.desync_code,
                MIRROR_FAILED_MESSAGE,
                summary={"mode": mode, "records": len(next_set), "error": f"{type(exc).__name__}: {exc}"},
            ) from exc

        if not check.in_sync:
            details = {"mode": mode, **summary.to_dict(), **check.to_dict()}
            logger.error("records %s: mirror desync in phase %s: %s", mode, plan.phase.value, details)
            raise RecordsStoreError(RecordsErrorKind.DESYNC, plan.desync_code, DESYNC_MESSAGE, summary=details)
        return summary

    def _write_legacy_best_effort(
        self,
        tx: RecordsTransaction,
        mode: str,
        next_set: List[Dict[str, Any]],
        updated_at: str,
    ) -> bool:
        try:
            with tx.savepoint(LEGACY_MIRROR_SAVEPOINT):
                tx.write_legacy_state(next_set, updated_at)
        except Exception as exc:
            logger.warning("records %s: legacy mirror write skipped: %s", mode, exc)
            with self._status_lock:
                self._legacy_mirror_skipped += 1
                self._last_error = f"{mode}: legacy mirror: {exc}"
            return False
        return True

    def _record_success(self, summary: Optional[Dict[str, Any]]) -> None:
        with self._status_lock:
            self._success += 1
            if summary is not None:
                self._last_summary = dict(summary)

    def _record_failure(self, exc: RecordsStoreError) -> None:
        with self._status_lock:
            if exc.kind == RecordsErrorKind.CONFLICT:
                self._conflicts += 1
            elif exc.kind == RecordsErrorKind.DESYNC:
                self._desync += 1
                self._last_summary = dict(exc.summary)
            else:
                self._failures += 1
            self._last_error = f"{exc.code}: {exc.message}"
