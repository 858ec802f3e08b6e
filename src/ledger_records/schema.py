"""Closed record schema and payload validation for the records endpoints.

Every record that reaches the store has passed through this module: only
known fields, bounded lengths, normalized checkbox, date and ``createdAt``
values, non-negative amounts with derived totals, unique ids. Unknown fields
are rejected, never dropped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .hashing import MAX_ID_LENGTH
from .patch import (
    PATCH_OPERATION_DELETE,
    DeleteOperation,
    PatchOperation,
    UpsertOperation,
    normalize_operation_type,
)
from .revision import INVALID_TOKEN_MESSAGE, NOT_PROVIDED, PRECONDITION_MESSAGE, format_revision_token, utc_now

PAYMENT_FIELDS = tuple(f"payment{index}" for index in range(1, 8))
PAYMENT_DATE_FIELDS = tuple(f"payment{index}Date" for index in range(1, 8))
MONEY_FIELDS = ("contractTotals", "totalPayments", "futurePayments", *PAYMENT_FIELDS)
DATE_FIELDS: FrozenSet[str] = frozenset(
    {*PAYMENT_DATE_FIELDS, "dateOfCollection", "dateWhenWrittenOff", "dateWhenFullyPaid"}
)

RECORD_FIELDS: FrozenSet[str] = frozenset(
    {
        "id",
        "createdAt",
        "clientName",
        "closedBy",
        "companyName",
        "serviceType",
        "contractTotals",
        "totalPayments",
        *PAYMENT_FIELDS,
        *PAYMENT_DATE_FIELDS,
        "futurePayments",
        "afterResult",
        "writtenOff",
        "notes",
        "collection",
        "dateOfCollection",
        "dateWhenWrittenOff",
        "dateWhenFullyPaid",
        "leadSource",
        "ssn",
        "clientPhoneNumber",
        "futurePayment",
        "identityIq",
        "clientEmailAddress",
        "active",
        "clientManager",
        "contractCompleted",
        "startedInWork",
    }
)

CHECKBOX_FIELDS: FrozenSet[str] = frozenset({"afterResult", "writtenOff", "active", "contractCompleted"})

FIELD_MAX_LENGTH: Dict[str, int] = {
    "id": MAX_ID_LENGTH,
    "clientName": 300,
    "companyName": 300,
    "closedBy": 220,
    "notes": 8000,
}
DEFAULT_FIELD_MAX_LENGTH = 4000

DEFAULT_MAX_RECORDS = 5000
DEFAULT_MAX_PATCH_OPERATIONS = 500
MAX_RECORD_KEYS = 64
# Field values plus field names.
MAX_RECORD_CHARS = 32_000
MAX_TOTAL_PAYLOAD_CHARS = 8_000_000
MAX_ABSOLUTE_AMOUNT_CENTS = 10_000_000_000

_CHECKBOX_TRUE = {"yes", "true", "1", "on"}
_CHECKBOX_FALSE = {"", "no", "false", "0", "off"}

_MONEY_DASHES = str.maketrans({"\u2212": "-", "\u2013": "-", "\u2014": "-"})
_MONEY_PARENS_RE = re.compile(r"\(([^)]*)\)")
_MONEY_STRIP_RE = re.compile(r"[^0-9.\-]")
_MONEY_RE = re.compile(r"^-?\d+(?:\.\d{1,2})?$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_US_DATE_RE = re.compile(r"^(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{2}|\d{4})$")
DATE_FORMAT_MESSAGE = "Use MM/DD/YYYY."


@dataclass
class ValidationResult:
    ok: bool
    records: List[Dict[str, str]] = field(default_factory=list)
    operations: List[PatchOperation] = field(default_factory=list)
    code: str = ""
    message: str = ""
    http_status: int = 200

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


@dataclass
class TokenParseResult:
    ok: bool
    expected_updated_at: Optional[str] = None
    code: str = ""
    message: str = ""
    http_status: int = 200


def _invalid(message: str, code: str = "invalid_records_payload", http_status: int = 400) -> ValidationResult:
    return ValidationResult(ok=False, code=code, message=message, http_status=http_status)


def _checkbox_value(raw: Any) -> Optional[str]:
    if raw is None or raw is False or raw == 0:
        return ""
    if raw is True or raw == 1:
        return "Yes"
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in _CHECKBOX_TRUE:
            return "Yes"
        if token in _CHECKBOX_FALSE:
            return ""
    return None


def _scalar_value(raw: Any) -> Optional[str]:
    if raw is None:
        return ""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, float):
        if raw != raw or raw in (float("inf"), float("-inf")):
            return None
        return str(int(raw)) if raw.is_integer() else str(raw)
    return None


def field_max_length(name: str) -> int:
    return FIELD_MAX_LENGTH.get(name, DEFAULT_FIELD_MAX_LENGTH)


def parse_money_cents(value: Any) -> Tuple[Optional[int], str]:
    """Parse an amount such as ``$1,234.50`` or ``(12)`` into integer cents.

    Returns ``(cents, error)``; blank input gives ``(None, "")`` and a bad
    amount gives ``(None, "invalid")`` or ``(None, "too_large")``.
    """
    text = str(value if value is not None else "").strip()[:120]
    if not text:
        return None, ""
    text = _MONEY_PARENS_RE.sub(r"-\1", text.translate(_MONEY_DASHES))
    normalized = _MONEY_STRIP_RE.sub("", text)
    if not _MONEY_RE.match(normalized):
        return None, "invalid"
    cents = int((Decimal(normalized) * 100).to_integral_value(rounding=ROUND_HALF_UP))
    if abs(cents) > MAX_ABSOLUTE_AMOUNT_CENTS:
        return None, "too_large"
    return cents, ""


def format_money_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, fraction = divmod(abs(cents), 100)
    return f"{sign}${whole:,}.{fraction:02d}"


def normalize_date_value(value: str) -> Optional[str]:
    """Return ``value`` as MM/DD/YYYY, ``""`` for blank, or None when it is not a real date."""
    text = value.strip()
    if not text:
        return ""
    iso = _ISO_DATE_RE.match(text)
    if iso:
        year, month, day = (int(part) for part in iso.groups())
    else:
        us = _US_DATE_RE.match(text)
        if not us:
            return None
        month, day, year = (int(part) for part in us.groups())
        if len(us.group(3)) == 2:
            year += 2000
    try:
        parsed = date(year, month, day)
    except ValueError:
        return None
    return f"{parsed.month:02d}/{parsed.day:02d}/{parsed.year:04d}"


def record_chars(record: Dict[str, str]) -> int:
    return sum(len(name) + len(value) for name, value in record.items())


def normalize_payment_fields(record: Dict[str, str], index: int = 0) -> Optional[ValidationResult]:
    """Check amounts and derive ``totalPayments`` and ``futurePayments`` in place.

    Returns the failing result, or None when the record is consistent.
    """
    parsed: Dict[str, Optional[int]] = {}
    for name in MONEY_FIELDS:
        if name not in record:
            continue
        cents, error = parse_money_cents(record[name])
        if error == "too_large":
            return _invalid(
                f'Record at index {index} exceeds allowed amount range in "{name}".',
                "records_payload_amount_too_large",
            )
        if error:
            return _invalid(
                f'Record at index {index} has invalid amount in "{name}".',
                "records_payload_invalid_amount",
            )
        if cents is not None and cents < 0 and name != "futurePayments":
            return _invalid(
                f'Record at index {index} has negative amount in "{name}".',
                "records_payload_negative_amount",
            )
        parsed[name] = cents

    payments = [parsed[name] for name in PAYMENT_FIELDS if parsed.get(name) is not None]
    if payments:
        parsed["totalPayments"] = sum(payments)
        record["totalPayments"] = format_money_cents(parsed["totalPayments"])

    contract = parsed.get("contractTotals")
    if contract is not None:
        future = contract - (parsed.get("totalPayments") or 0)
        record["futurePayments"] = format_money_cents(future)
        if future > 0:
            record["dateWhenFullyPaid"] = ""

    if record.get("writtenOff") == "Yes":
        if record.get("afterResult") == "Yes":
            record["afterResult"] = ""
        if not record.get("dateWhenWrittenOff"):
            record["dateWhenWrittenOff"] = utc_now().strftime("%m/%d/%Y")

    if record.get("dateWhenFullyPaid") and contract is not None and contract > 0:
        if not any(record.get(name) for name in PAYMENT_DATE_FIELDS):
            return _invalid(
                f'Record at index {index} cannot set "dateWhenFullyPaid" without a payment date.',
                "records_payload_invalid_fully_paid_date",
            )
    return None


def validate_record(raw: Any, index: int = 0) -> ValidationResult:
    if not isinstance(raw, dict):
        return _invalid(f"Record at index {index} must be an object.", "records_payload_invalid_record")
    if len(raw) > MAX_RECORD_KEYS:
        return _invalid(
            f"Record at index {index} has too many fields. Maximum allowed: {MAX_RECORD_KEYS}.",
            "records_payload_record_too_wide",
            413,
        )

    record: Dict[str, str] = {}
    for name, raw_value in raw.items():
        if name not in RECORD_FIELDS:
            return _invalid(
                f'Record at index {index} contains unsupported field "{name}".',
                "records_payload_unknown_field",
            )
        if name in CHECKBOX_FIELDS:
            value = _checkbox_value(raw_value)
            if value is None:
                return _invalid(
                    f'Record at index {index} has invalid checkbox value for "{name}".',
                    "records_payload_invalid_checkbox",
                )
        else:
            value = _scalar_value(raw_value)
            if value is None:
                return _invalid(
                    f'Record at index {index} has invalid type for "{name}".',
                    "records_payload_invalid_field_type",
                )
        if len(value) > field_max_length(name):
            return _invalid(
                f'Record at index {index} exceeds allowed length for "{name}".',
                "records_payload_field_too_long",
                413,
            )
        if name == "createdAt" and value:
            created_at = format_revision_token(value)
            if created_at is None:
                return _invalid(
                    f"Record at index {index} has invalid createdAt value.",
                    "records_payload_invalid_created_at",
                )
            value = created_at
        if name in DATE_FIELDS:
            normalized_date = normalize_date_value(value)
            if normalized_date is None:
                return _invalid(
                    f'Record at index {index} has invalid date in "{name}". {DATE_FORMAT_MESSAGE}',
                    "records_payload_invalid_date",
                )
            value = normalized_date
        record[name] = value

    if record_chars(record) > MAX_RECORD_CHARS:
        return _invalid(
            f"Record at index {index} is too large. Maximum allowed characters: {MAX_RECORD_CHARS}.",
            "records_payload_record_too_large",
            413,
        )
    failure = normalize_payment_fields(record, index)
    if failure is not None:
        return failure
    return ValidationResult(ok=True, records=[record])


def validate_records_payload(
    value: Any,
    *,
    max_records: int = DEFAULT_MAX_RECORDS,
    max_total_chars: int = MAX_TOTAL_PAYLOAD_CHARS,
) -> ValidationResult:
    if not isinstance(value, list):
        return _invalid("Payload must include `records` as an array.")
    if len(value) > max_records:
        return _invalid(
            f"Records payload is too large. Maximum allowed records: {max_records}.",
            "records_payload_too_many_items",
            413,
        )

    records: List[Dict[str, str]] = []
    seen_ids = set()
    total_chars = 0
    for index, raw in enumerate(value):
        result = validate_record(raw, index)
        if not result.ok:
            return result
        record = result.records[0]
        total_chars += record_chars(record)
        if total_chars > max_total_chars:
            return _invalid(
                f"Records payload is too large. Maximum allowed characters: {max_total_chars}.",
                "records_payload_too_large",
                413,
            )
        rid = record.get("id", "")
        if not rid:
            return _invalid(f"Record at index {index} must include `id`.", "records_payload_missing_id")
        if rid in seen_ids:
            return _invalid(
                f'Record at index {index} has duplicate id "{rid}".',
                "records_payload_duplicate_id",
            )
        seen_ids.add(rid)
        records.append(record)

    return ValidationResult(ok=True, records=records)


def validate_patch_payload(payload: Any, *, max_operations: int = DEFAULT_MAX_PATCH_OPERATIONS) -> ValidationResult:
    if not isinstance(payload, dict):
        return _invalid("Payload must be an object.", "invalid_records_patch_payload")
    operations = payload.get("operations")
    if not isinstance(operations, list):
        return _invalid("Payload must include `operations` as an array.", "invalid_records_patch_payload")
    if len(operations) > max_operations:
        return _invalid(
            f"Patch payload is too large. Maximum allowed operations: {max_operations}.",
            "records_patch_too_many_operations",
            413,
        )

    out: List[PatchOperation] = []
    for index, raw in enumerate(operations):
        if not isinstance(raw, dict):
            return _invalid(f"Operation at index {index} must be an object.", "records_patch_invalid_operation")
        op_type = normalize_operation_type(raw.get("type") or raw.get("op"))
        if not op_type:
            return _invalid(
                f"Operation at index {index} has invalid type. Allowed values: upsert, delete.",
                "records_patch_invalid_operation_type",
            )
        op_id = str(raw.get("id") or "").strip()
        if not op_id:
            return _invalid(f"Operation at index {index} must include `id`.", "records_patch_missing_id")
        if len(op_id) > MAX_ID_LENGTH:
            return _invalid(
                f'Operation at index {index} exceeds allowed length for "id".',
                "records_payload_field_too_long",
                413,
            )

        if op_type == PATCH_OPERATION_DELETE:
            out.append(DeleteOperation(id=op_id))
            continue

        record_result = validate_record(raw.get("record"), index)
        if not record_result.ok:
            return _invalid(
                f"Operation at index {index}: {record_result.message}",
                record_result.code or "records_patch_invalid_record",
                record_result.http_status,
            )
        record = record_result.records[0]
        if record.get("id") and record["id"] != op_id:
            return _invalid(f"Operation at index {index} has mismatched record id.", "records_patch_id_mismatch")
        record["id"] = op_id
        out.append(UpsertOperation(id=op_id, record=record))

    return ValidationResult(ok=True, operations=out)


def parse_expected_updated_at(body: Any) -> TokenParseResult:
    """Read ``expectedUpdatedAt`` from a request body.

    An absent key yields ``NOT_PROVIDED`` so the store answers 428; ``null``
    and ``""`` mean "expect an empty store".
    """
    if not isinstance(body, dict) or "expectedUpdatedAt" not in body:
        return TokenParseResult(
            ok=False,
            expected_updated_at=NOT_PROVIDED,
            code="records_precondition_required",
            message=PRECONDITION_MESSAGE,
            http_status=428,
        )
    raw = body.get("expectedUpdatedAt")
    if raw is None or raw == "":
        return TokenParseResult(ok=True, expected_updated_at=None)
    if not isinstance(raw, str):
        return TokenParseResult(ok=False, code="invalid_expected_updated_at", message=INVALID_TOKEN_MESSAGE, http_status=400)
    token = format_revision_token(raw.strip()[:120])
    if token is None:
        return TokenParseResult(ok=False, code="invalid_expected_updated_at", message=INVALID_TOKEN_MESSAGE, http_status=400)
    return TokenParseResult(ok=True, expected_updated_at=token)
