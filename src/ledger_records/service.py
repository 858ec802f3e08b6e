from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, Dict, Optional, Sequence, Tuple

from .contracts import ReadResult, RecordsErrorKind, RecordsFailure, RecordsStoreError, WriteOutcome
from .dual_read import DualReadComparator
from .dual_write import DualWriteCoordinator
from .mirror import RecordMirror
from .patch import PatchOperation
from .repository import RecordsRepository, db_unavailable_errors
from .revision import NOT_PROVIDED
from .router import READ_SOURCE_MIRROR, MigrationRouter
from .schema import (
    DEFAULT_MAX_PATCH_OPERATIONS,
    DEFAULT_MAX_RECORDS,
    parse_expected_updated_at,
    validate_patch_payload,
    validate_records_payload,
)


logger = logging.getLogger(__name__)

DB_UNAVAILABLE_MESSAGE = "Records storage is temporarily unavailable. Try again later."


def _unavailable(exc: Exception) -> RecordsStoreError:
    return RecordsStoreError(
        RecordsErrorKind.DB_UNAVAILABLE,
        "records_db_unavailable",
        DB_UNAVAILABLE_MESSAGE,
        summary={"error": f"{type(exc).__name__}: {exc}"},
    )


def _failure_response(failure: RecordsFailure) -> Tuple[HTTPStatus, Dict[str, Any]]:
    return HTTPStatus(failure.http_status), failure.to_payload()


class RecordsService:
    """``records.get / put / patch`` over the migration router.

    Typed store errors come back as ``WriteOutcome`` failures; the
    ``handle_*`` methods additionally validate raw request bodies and return
    an HTTP status with a JSON-ready payload.
    """

    def __init__(
        self,
        *,
        repository: RecordsRepository,
        router: MigrationRouter,
        coordinator: Optional[DualWriteCoordinator] = None,
        comparator: Optional[DualReadComparator] = None,
        mirror: Optional[RecordMirror] = None,
        max_records: int = DEFAULT_MAX_RECORDS,
        max_patch_operations: int = DEFAULT_MAX_PATCH_OPERATIONS,
    ) -> None:
        self.repository = repository
        self.router = router
        self.mirror = mirror or RecordMirror()
        self.coordinator = coordinator or DualWriteCoordinator(repository=repository, router=router, mirror=self.mirror)
        self.comparator = comparator or DualReadComparator(repository=repository)
        self.max_records = max(1, int(max_records))
        self.max_patch_operations = max(1, int(max_patch_operations))
        self._unavailable_errors = db_unavailable_errors()

    def get(self, *, requested_by: str = "") -> ReadResult:
        plan = self.router.plan()
        try:
            with self.repository.read_snapshot() as tx:
                state = tx.read_state()
                if plan.read_source == READ_SOURCE_MIRROR:
                    records = self.mirror.load_records(tx)
                else:
                    records = [dict(record) for record in state.records]
        except self._unavailable_errors as exc:
            logger.warning("records read failed: %s", exc)
            raise _unavailable(exc) from exc

        result = ReadResult(records=records, updated_at=state.updated_at, source=plan.read_source)
        if plan.compare_on_read:
            self.comparator.schedule(records, state.updated_at, requested_by=requested_by)
        return result

    def put(self, records: Sequence[Dict[str, Any]], expected_updated_at: Any = NOT_PROVIDED) -> WriteOutcome:
        return self._run_write(lambda: self.coordinator.write_full(records, expected_updated_at))

    def patch(self, operations: Sequence[PatchOperation], expected_updated_at: Any = NOT_PROVIDED) -> WriteOutcome:
        return self._run_write(lambda: self.coordinator.write_patch(operations, expected_updated_at))

    def _run_write(self, write: Any) -> WriteOutcome:
        try:
            return write()
        except RecordsStoreError as exc:
            return WriteOutcome(ok=False, error=exc.to_failure(), summary=dict(exc.summary))
        except self._unavailable_errors as exc:
            logger.warning("records write failed, storage unavailable: %s", exc)
            return WriteOutcome(ok=False, error=_unavailable(exc).to_failure())

    def status(self) -> Dict[str, Any]:
        return {
            "router": self.router.status,
            "dual_write": self.coordinator.status,
            "dual_read_compare": self.comparator.status,
        }

    def handle_get(self, *, requested_by: str = "") -> Tuple[HTTPStatus, Dict[str, Any]]:
        try:
            result = self.get(requested_by=requested_by)
        except RecordsStoreError as exc:
            return _failure_response(exc.to_failure())
        except Exception:
            logger.exception("records read failed")
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Failed to load records.", "code": "records_read_failed"}
        return HTTPStatus.OK, result.to_payload()

    def handle_put(self, body: Any) -> Tuple[HTTPStatus, Dict[str, Any]]:
        token = parse_expected_updated_at(body)
        if not token.ok:
            return HTTPStatus(token.http_status), {"error": token.message, "code": token.code}
        validation = validate_records_payload(body.get("records"), max_records=self.max_records)
        if not validation.ok:
            return HTTPStatus(validation.http_status), validation.to_payload()
        return self._write_response(lambda: self.put(validation.records, token.expected_updated_at))

    def handle_patch(self, body: Any) -> Tuple[HTTPStatus, Dict[str, Any]]:
        token = parse_expected_updated_at(body)
        if not token.ok:
            return HTTPStatus(token.http_status), {"error": token.message, "code": token.code}
        validation = validate_patch_payload(body, max_operations=self.max_patch_operations)
        if not validation.ok:
            return HTTPStatus(validation.http_status), validation.to_payload()
        return self._write_response(lambda: self.patch(validation.operations, token.expected_updated_at))

    def _write_response(self, write: Any) -> Tuple[HTTPStatus, Dict[str, Any]]:
        try:
            outcome = write()
        except Exception:
            logger.exception("records write failed")
            return HTTPStatus.INTERNAL_SERVER_ERROR, {"error": "Failed to save records.", "code": "records_write_failed"}
        return HTTPStatus(outcome.http_status), outcome.to_payload()
