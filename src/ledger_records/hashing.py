from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Iterable, Mapping

MAX_ID_LENGTH = 180


def stable_stringify(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_record_hash(record: Mapping[str, Any]) -> str:
    canonical = stable_stringify(dict(record or {}))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def record_id(record: Mapping[str, Any]) -> str:
    return str((record or {}).get("id") or "").strip()[:MAX_ID_LENGTH]


def compute_hashes_by_id(records: Iterable[Mapping[str, Any]]) -> Dict[str, str]:
    """Map record id to content hash. Later duplicates win, records without id are skipped."""
    out: Dict[str, str] = {}
    for record in records:
        rid = record_id(record)
        if not rid:
            continue
        out[rid] = compute_record_hash(record)
    return out


def compute_rows_checksum(hashes_by_id: Mapping[str, str]) -> str:
    """Aggregate checksum over ``id:hash`` lines sorted by id."""
    digest = hashlib.sha256()
    for rid in sorted(hashes_by_id):
        digest.update(rid.encode("utf-8"))
        digest.update(b":")
        digest.update(str(hashes_by_id[rid]).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def compute_records_checksum(records: Iterable[Mapping[str, Any]]) -> str:
    return compute_rows_checksum(compute_hashes_by_id(records))
