from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .hashing import MAX_ID_LENGTH, record_id
from .revision import format_revision_token, utc_now

PATCH_OPERATION_UPSERT = "upsert"
PATCH_OPERATION_DELETE = "delete"


@dataclass(frozen=True)
class UpsertOperation:
    id: str
    record: Dict[str, Any] = field(default_factory=dict)
    type: str = PATCH_OPERATION_UPSERT

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id, "record": dict(self.record)}


@dataclass(frozen=True)
class DeleteOperation:
    id: str
    type: str = PATCH_OPERATION_DELETE

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.id}


PatchOperation = Union[UpsertOperation, DeleteOperation]


def normalize_operation_type(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    if value in {PATCH_OPERATION_UPSERT, PATCH_OPERATION_DELETE}:
        return value
    return ""


def operation_from_dict(raw: Dict[str, Any]) -> Optional[PatchOperation]:
    """Build an operation from an already validated payload item."""
    op_type = normalize_operation_type(raw.get("type") or raw.get("op"))
    op_id = str(raw.get("id") or "").strip()[:MAX_ID_LENGTH]
    if not op_type or not op_id:
        return None
    if op_type == PATCH_OPERATION_DELETE:
        return DeleteOperation(id=op_id)
    record = raw.get("record")
    return UpsertOperation(id=op_id, record=dict(record) if isinstance(record, dict) else {})


def _index_by_id(records: Sequence[Dict[str, Any]]) -> Dict[str, int]:
    index: Dict[str, int] = {}
    for position, record in enumerate(records):
        rid = record_id(record)
        if rid:
            index[rid] = position
    return index


def apply_patch_operations(
    current_records: Sequence[Dict[str, Any]],
    operations: Sequence[PatchOperation],
    *,
    now_iso: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Apply operations strictly in list order and return the next record set.

    Upsert merges its fields over the existing record in place or appends a
    new id; delete of an
    absent id is a no-op. Repeated ids are applied one after another, the
    last one wins. Inputs are not mutated.
    """
    stamp = format_revision_token(now_iso) or utc_now().isoformat(timespec="microseconds")
    next_records = [dict(record) for record in current_records if isinstance(record, dict)]
    index = _index_by_id(next_records)

    for operation in operations:
        op_id = str(operation.id or "").strip()[:MAX_ID_LENGTH]
        if not op_id:
            continue

        if isinstance(operation, DeleteOperation):
            position = index.get(op_id)
            if position is None:
                continue
            del next_records[position]
            index = _index_by_id(next_records)
            continue

        position = index.get(op_id)
        if position is None:
            replacement = dict(operation.record)
        else:
            replacement = {**next_records[position], **operation.record}
        replacement["id"] = op_id
        if not format_revision_token(replacement.get("createdAt")):
            replacement["createdAt"] = stamp

        if position is None:
            next_records.append(replacement)
            index[op_id] = len(next_records) - 1
        else:
            next_records[position] = replacement

    return next_records
