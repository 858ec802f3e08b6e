from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from .contracts import MirrorRow
from .hashing import compute_hashes_by_id, compute_record_hash, compute_rows_checksum
from .repository import RecordsRepository
from .revision import format_revision_token


logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_LIMIT = 20
MAX_SAMPLE_LIMIT = 20
DEFAULT_COMPARE_SOURCE = "records.get"
DEFAULT_MAX_IN_FLIGHT = 2


def _clamp_sample_limit(value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = DEFAULT_SAMPLE_LIMIT
    return max(1, min(parsed, MAX_SAMPLE_LIMIT))


def compare_snapshots(
    legacy_records: Sequence[Dict[str, Any]],
    mirror_rows: Sequence[MirrorRow],
    *,
    source: str = DEFAULT_COMPARE_SOURCE,
    sample_limit: int = DEFAULT_SAMPLE_LIMIT,
    max_sample_limit: int = MAX_SAMPLE_LIMIT,
) -> Dict[str, Any]:
    """Compare the legacy record set with mirror rows by id and content hash.

    Mirror hashes are recomputed from the stored payload; a row whose stored
    ``record_hash`` disagrees with its payload counts separately. Id samples
    hold at most ``max_sample_limit`` entries per category.
    """
    limit = max(1, min(int(sample_limit or DEFAULT_SAMPLE_LIMIT), int(max_sample_limit)))
    legacy_hashes = compute_hashes_by_id(record for record in legacy_records if isinstance(record, dict))
    mirror_hashes: Dict[str, str] = {}
    stored_hash_mismatch = 0
    for row in mirror_rows:
        if not row.id:
            continue
        computed = compute_record_hash(row.record)
        mirror_hashes[row.id] = computed
        if row.record_hash != computed:
            stored_hash_mismatch += 1

    missing: List[str] = []
    hash_mismatch: List[str] = []
    for row_id in sorted(legacy_hashes):
        if row_id not in mirror_hashes:
            missing.append(row_id)
        elif legacy_hashes[row_id] != mirror_hashes[row_id]:
            hash_mismatch.append(row_id)
    extra = sorted(row_id for row_id in mirror_hashes if row_id not in legacy_hashes)

    legacy_checksum = compute_rows_checksum(legacy_hashes)
    mirror_checksum = compute_rows_checksum(mirror_hashes)
    legacy_count = len(legacy_records)
    mirror_count = len(mirror_rows)
    mismatch = (
        legacy_count != mirror_count
        or legacy_checksum != mirror_checksum
        or bool(missing)
        or bool(extra)
        or bool(hash_mismatch)
        or stored_hash_mismatch > 0
    )
    return {
        "status": "mismatch" if mismatch else "match",
        "source": source,
        "legacy_count": legacy_count,
        "mirror_count": mirror_count,
        "legacy_checksum": legacy_checksum,
        "mirror_checksum": mirror_checksum,
        "missing_in_mirror_count": len(missing),
        "extra_in_mirror_count": len(extra),
        "hash_mismatch_count": len(hash_mismatch),
        "mirror_stored_hash_mismatch_count": stored_hash_mismatch,
        "missing_in_mirror_sample_ids": missing[:limit],
        "extra_in_mirror_sample_ids": extra[:limit],
        "hash_mismatch_sample_ids": hash_mismatch[:limit],
    }


class DualReadComparator:
    """Verifies a served legacy read against the mirror, off the request path.

    Results only feed counters and logs; nothing here repairs data or fails
    the read that triggered it.
    """

    def __init__(
        self,
        *,
        repository: RecordsRepository,
        sample_limit: int = DEFAULT_SAMPLE_LIMIT,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    ) -> None:
        self._repository = repository
        self.sample_limit = _clamp_sample_limit(sample_limit)
        self._slots = threading.BoundedSemaphore(max(1, int(max_in_flight)))
        self._busy_skipped = 0
        self._status_lock = threading.Lock()
        self._attempts = 0
        self._matches = 0
        self._mismatches = 0
        self._skipped = 0
        self._errors = 0
        self._last_mismatch: Optional[Dict[str, Any]] = None
        self._last_error: Optional[str] = None

    @property
    def status(self) -> Dict[str, Any]:
        with self._status_lock:
            return {
                "attempts": self._attempts,
                "matches": self._matches,
                "mismatches": self._mismatches,
                "skipped": self._skipped,
                "busy_skipped": self._busy_skipped,
                "errors": self._errors,
                "last_mismatch": dict(self._last_mismatch) if self._last_mismatch else None,
                "last_error": self._last_error,
            }

    def run(
        self,
        legacy_records: Sequence[Dict[str, Any]],
        legacy_updated_at: Optional[str],
        *,
        source: str = DEFAULT_COMPARE_SOURCE,
        requested_by: str = "",
    ) -> Optional[Dict[str, Any]]:
        with self._status_lock:
            self._attempts += 1
        try:
            with self._repository.read_snapshot() as tx:
                state = tx.read_state()
                mirror_rows = tx.list_mirror_rows()
            if format_revision_token(state.updated_at) != format_revision_token(legacy_updated_at):
                with self._status_lock:
                    self._skipped += 1
                return {"status": "skipped_stale", "source": source, "requested_by": requested_by}
            report = compare_snapshots(legacy_records, mirror_rows, source=source, sample_limit=self.sample_limit)
        except Exception as exc:
            with self._status_lock:
                self._errors += 1
                self._last_error = f"{type(exc).__name__}: {exc}"
            logger.warning("records dual-read compare failed: %s", exc)
            return None

        report["requested_by"] = requested_by
        with self._status_lock:
            if report["status"] == "match":
                self._matches += 1
            else:
                self._mismatches += 1
                self._last_mismatch = dict(report)
        if report["status"] != "match":
            logger.warning("records dual-read compare mismatch detected: %s", report)
        return report

    def schedule(
        self,
        legacy_records: Sequence[Dict[str, Any]],
        legacy_updated_at: Optional[str],
        *,
        source: str = DEFAULT_COMPARE_SOURCE,
        requested_by: str = "",
    ) -> Optional[threading.Thread]:
        """Start a compare on a daemon thread, or return None when every slot is busy."""
        if not self._slots.acquire(blocking=False):
            with self._status_lock:
                self._busy_skipped += 1
            return None
        snapshot = [dict(record) for record in legacy_records]
        worker = threading.Thread(
            target=self._run_in_slot,
            args=(snapshot, legacy_updated_at),
            kwargs={"source": source, "requested_by": requested_by},
            name="records-dual-read-compare",
            daemon=True,
        )
        try:
            worker.start()
        except Exception:
            self._slots.release()
            raise
        return worker

    def _run_in_slot(self, *args: Any, **kwargs: Any) -> None:
        try:
            self.run(*args, **kwargs)
        finally:
            self._slots.release()
