from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordsErrorKind(str, Enum):
    PRECONDITION_REQUIRED = "precondition_required"
    CONFLICT = "conflict"
    INVALID_TOKEN = "invalid_token"
    DESYNC = "desync"
    INVALID_PAYLOAD = "invalid_payload"
    DB_UNAVAILABLE = "db_unavailable"


ERROR_HTTP_STATUS: Dict[RecordsErrorKind, int] = {
    RecordsErrorKind.PRECONDITION_REQUIRED: 428,
    RecordsErrorKind.CONFLICT: 409,
    RecordsErrorKind.INVALID_TOKEN: 400,
    RecordsErrorKind.DESYNC: 500,
    RecordsErrorKind.INVALID_PAYLOAD: 400,
    RecordsErrorKind.DB_UNAVAILABLE: 503,
}


@dataclass
class RecordsFailure:
    kind: RecordsErrorKind
    code: str
    message: str
    http_status: int
    current_updated_at: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.kind == RecordsErrorKind.CONFLICT:
            payload["currentUpdatedAt"] = self.current_updated_at
        return payload


class RecordsStoreError(Exception):
    """Raised inside a write transaction so the transaction rolls back.

    ``RecordsService`` turns it into a ``RecordsFailure`` value; it is not
    meant to escape the service.
    """

    def __init__(
        self,
        kind: RecordsErrorKind,
        code: str,
        message: str,
        *,
        current_updated_at: Optional[str] = None,
        summary: Optional[Dict[str, Any]] = None,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code
        self.message = message
        self.current_updated_at = current_updated_at
        self.summary = dict(summary or {})
        self.http_status = int(http_status or ERROR_HTTP_STATUS.get(kind, 500))

    def to_failure(self) -> RecordsFailure:
        return RecordsFailure(
            kind=self.kind,
            code=self.code,
            message=self.message,
            http_status=self.http_status,
            current_updated_at=self.current_updated_at,
            summary=dict(self.summary),
        )


@dataclass
class StateSnapshot:
    records: List[Dict[str, Any]]
    updated_at: Optional[str]
    exists: bool = True


@dataclass
class MirrorRow:
    id: str
    record: Dict[str, Any]
    record_hash: str
    client_name: str = ""
    company_name: str = ""
    closed_by: str = ""
    created_at: Optional[str] = None
    position: int = 0


@dataclass
class ReconcileSummary:
    expected_count: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    repositioned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expected_count": self.expected_count,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deleted": self.deleted,
            "repositioned": self.repositioned,
        }


@dataclass
class MirrorCheck:
    expected_count: int
    mirror_count: int
    hash_mismatch_ids: List[str] = field(default_factory=list)
    missing_ids: List[str] = field(default_factory=list)
    extra_ids: List[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return (
            self.expected_count == self.mirror_count
            and not self.hash_mismatch_ids
            and not self.missing_ids
            and not self.extra_ids
        )

    def to_dict(self, sample_limit: int = 20) -> Dict[str, Any]:
        return {
            "expected_count": self.expected_count,
            "mirror_count": self.mirror_count,
            "in_sync": self.in_sync,
            "hash_mismatch_count": len(self.hash_mismatch_ids),
            "missing_count": len(self.missing_ids),
            "extra_count": len(self.extra_ids),
            "hash_mismatch_sample": self.hash_mismatch_ids[:sample_limit],
            "missing_sample": self.missing_ids[:sample_limit],
            "extra_sample": self.extra_ids[:sample_limit],
        }


@dataclass
class ReadResult:
    records: List[Dict[str, Any]]
    updated_at: Optional[str]
    source: str

    def to_payload(self) -> Dict[str, Any]:
        return {"records": self.records, "updatedAt": self.updated_at}


@dataclass
class WriteOutcome:
    ok: bool
    updated_at: Optional[str] = None
    applied_operations: Optional[int] = None
    error: Optional[RecordsFailure] = None
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        assert self.error is not None
        return self.error.http_status

    def to_payload(self) -> Dict[str, Any]:
        if not self.ok:
            assert self.error is not None
            return self.error.to_payload()
        payload: Dict[str, Any] = {"ok": True, "updatedAt": self.updated_at}
        if self.applied_operations is not None:
            payload["appliedOperations"] = self.applied_operations
        return payload
