from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .contracts import RecordsErrorKind, RecordsStoreError


UTC = timezone.utc


class _NotProvided:
    def __repr__(self) -> str:
        return "NOT_PROVIDED"

    def __bool__(self) -> bool:
        return False


# Marks a write request that carried no ``expectedUpdatedAt`` at all.
NOT_PROVIDED: Any = _NotProvided()

CONFLICT_MESSAGE = "Records were updated by another operation. Refresh records and try again."
PRECONDITION_MESSAGE = "Payload must include `expectedUpdatedAt` (latest revision from GET /api/records)."
INVALID_TOKEN_MESSAGE = "`expectedUpdatedAt` must be a valid ISO datetime or null."


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_revision_token(value: Any) -> Optional[datetime]:
    """Parse a stored or caller-supplied token; ``None`` for empty or unparseable input."""
    if value is None or value is NOT_PROVIDED:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_revision_token(value: Any) -> Optional[str]:
    parsed = parse_revision_token(value)
    if parsed is None:
        return None
    return parsed.astimezone(UTC).isoformat(timespec="microseconds")


def next_revision_token(current: Any, *, now: Optional[datetime] = None) -> str:
    """New token strictly after ``current``, so a token is never reused."""
    candidate = (now or utc_now()).astimezone(UTC)
    previous = parse_revision_token(current)
    if previous is not None and candidate <= previous:
        candidate = previous + timedelta(microseconds=1)
    return candidate.isoformat(timespec="microseconds")


def normalize_expected_token(expected: Any) -> Optional[str]:
    """Validate a caller token before any I/O.

    Returns the canonical token, or ``None`` when the caller expects an empty
    store. Raises ``RecordsStoreError`` for a missing or malformed token.
    """
    if expected is NOT_PROVIDED:
        raise RecordsStoreError(
            RecordsErrorKind.PRECONDITION_REQUIRED,
            "records_precondition_required",
            PRECONDITION_MESSAGE,
        )
    if expected is None or expected == "":
        return None
    if not isinstance(expected, (str, datetime)):
        raise RecordsStoreError(
            RecordsErrorKind.INVALID_TOKEN,
            "invalid_expected_updated_at",
            INVALID_TOKEN_MESSAGE,
        )
    formatted = format_revision_token(expected)
    if formatted is None:
        raise RecordsStoreError(
            RecordsErrorKind.INVALID_TOKEN,
            "invalid_expected_updated_at",
            INVALID_TOKEN_MESSAGE,
        )
    return formatted


@dataclass(frozen=True)
class GuardResult:
    ok: bool
    kind: Optional[RecordsErrorKind] = None
    current_updated_at: Optional[str] = None

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        if self.kind == RecordsErrorKind.PRECONDITION_REQUIRED:
            raise RecordsStoreError(
                RecordsErrorKind.PRECONDITION_REQUIRED,
                "records_precondition_required",
                PRECONDITION_MESSAGE,
            )
        raise RecordsStoreError(
            RecordsErrorKind.CONFLICT,
            "records_conflict",
            CONFLICT_MESSAGE,
            current_updated_at=self.current_updated_at,
        )


def check_token(expected: Any, current: Any) -> GuardResult:
    """Compare the caller's revision token with the locked current one.

    ``None``/``""`` as ``expected`` only matches a never-initialized store.
    Tokens compare as instants, so two spellings of one instant match.
    """
    if expected is NOT_PROVIDED:
        return GuardResult(ok=False, kind=RecordsErrorKind.PRECONDITION_REQUIRED)

    current_at = parse_revision_token(current)
    current_token = format_revision_token(current_at)
    expected_at = parse_revision_token(expected)
    if expected_at is not None:
        if current_at is not None and current_at == expected_at:
            return GuardResult(ok=True, current_updated_at=current_token)
        return GuardResult(ok=False, kind=RecordsErrorKind.CONFLICT, current_updated_at=current_token)

    expects_empty = expected is None or expected == ""
    if expects_empty and current_at is None:
        return GuardResult(ok=True, current_updated_at=None)
    return GuardResult(ok=False, kind=RecordsErrorKind.CONFLICT, current_updated_at=current_token)
