from __future__ import annotations

import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from ledger_records.patch import DeleteOperation, UpsertOperation
from ledger_records.revision import NOT_PROVIDED
from ledger_records.schema import (
    MAX_RECORD_KEYS,
    format_money_cents,
    normalize_date_value,
    parse_expected_updated_at,
    parse_money_cents,
    validate_patch_payload,
    validate_record,
    validate_records_payload,
)


class ValidateRecordTests(unittest.TestCase):
    def test_normalizes_known_fields(self) -> None:
        result = validate_record(
            {
                "id": " a ",
                "clientName": " Acme ",
                "contractTotals": 1500,
                "totalPayments": 12.5,
                "payment1": 3.0,
                "afterResult": True,
                "writtenOff": "no",
                "active": "YES",
                "createdAt": "2024-01-01T00:00:00Z",
            }
        )
        self.assertTrue(result.ok)
        record = result.records[0]
        self.assertEqual(record["id"], "a")
        self.assertEqual(record["clientName"], "Acme")
        self.assertEqual(record["contractTotals"], "1500")
        self.assertEqual(record["payment1"], "3")
        self.assertEqual(record["totalPayments"], "$3.00")
        self.assertEqual(record["futurePayments"], "$1,497.00")
        self.assertEqual(record["dateWhenFullyPaid"], "")
        self.assertEqual(record["afterResult"], "Yes")
        self.assertEqual(record["writtenOff"], "")
        self.assertEqual(record["active"], "Yes")
        self.assertEqual(record["createdAt"], "2024-01-01T00:00:00.000000+00:00")

    def test_rejects_unknown_field(self) -> None:
        result = validate_record({"id": "a", "favoriteColor": "blue"}, 3)
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "records_payload_unknown_field")
        self.assertEqual(result.http_status, 400)
        self.assertIn("index 3", result.message)

    def test_rejects_too_long_values(self) -> None:
        result = validate_record({"id": "a", "notes": "x" * 8001})
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "records_payload_field_too_long")
        self.assertEqual(result.http_status, 413)
        self.assertTrue(validate_record({"id": "a", "notes": "x" * 8000}).ok)
        self.assertFalse(validate_record({"id": "a", "clientName": "x" * 301}).ok)
        self.assertFalse(validate_record({"id": "a", "serviceType": "x" * 4001}).ok)

    def test_rejects_bad_types_and_values(self) -> None:
        self.assertEqual(validate_record("nope").code, "records_payload_invalid_record")
        self.assertEqual(validate_record({"id": "a", "notes": {"x": 1}}).code, "records_payload_invalid_field_type")
        self.assertEqual(validate_record({"id": "a", "notes": True}).code, "records_payload_invalid_field_type")
        self.assertEqual(validate_record({"id": "a", "active": "maybe"}).code, "records_payload_invalid_checkbox")
        self.assertEqual(validate_record({"id": "a", "createdAt": "soon"}).code, "records_payload_invalid_created_at")

    def test_rejects_too_wide_record(self) -> None:
        result = validate_record({f"field{index}": "" for index in range(MAX_RECORD_KEYS + 1)})
        self.assertEqual(result.code, "records_payload_record_too_wide")
        self.assertEqual(result.http_status, 413)

    def test_rejects_too_large_record(self) -> None:
        names = (
            "serviceType",
            "collection",
            "leadSource",
            "ssn",
            "clientPhoneNumber",
            "futurePayment",
            "identityIq",
            "clientEmailAddress",
            "clientManager",
        )
        raw = {"id": "a"}
        raw.update({name: "x" * 4000 for name in names})
        result = validate_record(raw)
        self.assertEqual(result.code, "records_payload_record_too_large")
        self.assertEqual(result.http_status, 413)


class AmountFieldTests(unittest.TestCase):
    def test_parse_money_cents(self) -> None:
        self.assertEqual(parse_money_cents("$1,234.5"), (123450, ""))
        self.assertEqual(parse_money_cents("(12)"), (-1200, ""))
        self.assertEqual(parse_money_cents("\u22127.25"), (-725, ""))
        self.assertEqual(parse_money_cents(""), (None, ""))
        self.assertEqual(parse_money_cents("12.345"), (None, "invalid"))
        self.assertEqual(parse_money_cents("abc"), (None, "invalid"))
        self.assertEqual(parse_money_cents("100000001"), (None, "too_large"))

    def test_format_money_cents(self) -> None:
        self.assertEqual(format_money_cents(123456789), "$1,234,567.89")
        self.assertEqual(format_money_cents(-500), "-$5.00")
        self.assertEqual(format_money_cents(0), "$0.00")

    def test_payments_derive_totals(self) -> None:
        result = validate_record(
            {"id": "a", "contractTotals": "$1,000", "payment1": "250.50", "payment2": "$100", "totalPayments": "9"}
        )
        self.assertTrue(result.ok)
        record = result.records[0]
        self.assertEqual(record["totalPayments"], "$350.50")
        self.assertEqual(record["futurePayments"], "$649.50")

    def test_overpaid_contract_keeps_negative_future(self) -> None:
        result = validate_record({"id": "a", "contractTotals": "100", "payment1": "150"})
        self.assertTrue(result.ok)
        self.assertEqual(result.records[0]["futurePayments"], "-$50.00")

    def test_rejects_bad_amounts(self) -> None:
        self.assertEqual(validate_record({"id": "a", "payment3": "ten"}).code, "records_payload_invalid_amount")
        self.assertEqual(validate_record({"id": "a", "payment1": "-5"}).code, "records_payload_negative_amount")
        self.assertEqual(validate_record({"id": "a", "contractTotals": "(5)"}).code, "records_payload_negative_amount")
        self.assertEqual(
            validate_record({"id": "a", "contractTotals": "$200,000,000"}).code,
            "records_payload_amount_too_large",
        )
        self.assertTrue(validate_record({"id": "a", "futurePayments": "-5"}).ok)

    def test_written_off_clears_after_result_and_stamps_date(self) -> None:
        fixed = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)
        with patch("ledger_records.schema.utc_now", return_value=fixed):
            result = validate_record({"id": "a", "writtenOff": "yes", "afterResult": "yes"})
        record = result.records[0]
        self.assertEqual(record["afterResult"], "")
        self.assertEqual(record["dateWhenWrittenOff"], "03/05/2024")

        result = validate_record({"id": "a", "writtenOff": "yes", "dateWhenWrittenOff": "2023-12-31"})
        self.assertEqual(result.records[0]["dateWhenWrittenOff"], "12/31/2023")

    def test_fully_paid_date_needs_payment_date(self) -> None:
        raw = {"id": "a", "contractTotals": "100", "payment1": "100", "dateWhenFullyPaid": "3/5/2024"}
        result = validate_record(raw)
        self.assertEqual(result.code, "records_payload_invalid_fully_paid_date")
        self.assertEqual(result.http_status, 400)

        result = validate_record({**raw, "payment1Date": "3/5/24"})
        self.assertTrue(result.ok)
        record = result.records[0]
        self.assertEqual(record["dateWhenFullyPaid"], "03/05/2024")
        self.assertEqual(record["payment1Date"], "03/05/2024")
        self.assertEqual(record["futurePayments"], "$0.00")

    def test_open_balance_clears_fully_paid_date(self) -> None:
        result = validate_record(
            {"id": "a", "contractTotals": "200", "payment1": "100", "dateWhenFullyPaid": "03/05/2024"}
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.records[0]["dateWhenFullyPaid"], "")


class DateFieldTests(unittest.TestCase):
    def test_normalize_date_value(self) -> None:
        self.assertEqual(normalize_date_value("2024-03-05"), "03/05/2024")
        self.assertEqual(normalize_date_value("3/5/24"), "03/05/2024")
        self.assertEqual(normalize_date_value("1.2.2024"), "01/02/2024")
        self.assertEqual(normalize_date_value("12-31-2023"), "12/31/2023")
        self.assertEqual(normalize_date_value("  "), "")
        self.assertIsNone(normalize_date_value("02/30/2024"))
        self.assertIsNone(normalize_date_value("2024-13-01"))
        self.assertIsNone(normalize_date_value("next week"))

    def test_rejects_invalid_date_field(self) -> None:
        result = validate_record({"id": "a", "dateOfCollection": "31/31/2024"})
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "records_payload_invalid_date")
        self.assertIn("MM/DD/YYYY", result.message)
        self.assertTrue(validate_record({"id": "a", "dateOfCollection": ""}).ok)


class ValidateRecordsPayloadTests(unittest.TestCase):
    def test_valid_payload(self) -> None:
        result = validate_records_payload([{"id": "a"}, {"id": "b", "clientName": "B"}])
        self.assertTrue(result.ok)
        self.assertEqual([item["id"] for item in result.records], ["a", "b"])

    def test_rejects_non_list(self) -> None:
        result = validate_records_payload({"id": "a"})
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "invalid_records_payload")

    def test_rejects_missing_and_duplicate_ids(self) -> None:
        self.assertEqual(validate_records_payload([{"clientName": "A"}]).code, "records_payload_missing_id")
        self.assertEqual(validate_records_payload([{"id": "a"}, {"id": "a"}]).code, "records_payload_duplicate_id")

    def test_rejects_too_many_records(self) -> None:
        result = validate_records_payload([{"id": "a"}, {"id": "b"}], max_records=1)
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "records_payload_too_many_items")
        self.assertEqual(result.http_status, 413)

    def test_rejects_payload_over_total_size(self) -> None:
        raw = [{"id": "a", "notes": "x" * 100}, {"id": "b", "notes": "x" * 100}]
        self.assertTrue(validate_records_payload(raw, max_total_chars=300).ok)
        result = validate_records_payload(raw, max_total_chars=150)
        self.assertFalse(result.ok)
        self.assertEqual(result.code, "records_payload_too_large")
        self.assertEqual(result.http_status, 413)


class ValidatePatchPayloadTests(unittest.TestCase):
    def test_valid_operations(self) -> None:
        result = validate_patch_payload(
            {
                "operations": [
                    {"type": "upsert", "id": "a", "record": {"id": "a", "clientName": "Acme"}},
                    {"type": "delete", "id": "b"},
                    {"type": "upsert", "id": "a", "record": {"clientName": "Acme 2"}},
                ]
            }
        )
        self.assertTrue(result.ok)
        self.assertEqual(
            result.operations,
            [
                UpsertOperation(id="a", record={"id": "a", "clientName": "Acme"}),
                DeleteOperation(id="b"),
                UpsertOperation(id="a", record={"id": "a", "clientName": "Acme 2"}),
            ],
        )

    def test_rejects_malformed_payloads(self) -> None:
        self.assertEqual(validate_patch_payload([]).code, "invalid_records_patch_payload")
        self.assertEqual(validate_patch_payload({"operations": "x"}).code, "invalid_records_patch_payload")
        self.assertEqual(
            validate_patch_payload({"operations": ["x"]}).code,
            "records_patch_invalid_operation",
        )
        self.assertEqual(
            validate_patch_payload({"operations": [{"type": "merge", "id": "a"}]}).code,
            "records_patch_invalid_operation_type",
        )
        self.assertEqual(
            validate_patch_payload({"operations": [{"type": "delete"}]}).code,
            "records_patch_missing_id",
        )
        self.assertEqual(
            validate_patch_payload({"operations": [{"type": "upsert", "id": "a", "record": {"id": "b"}}]}).code,
            "records_patch_id_mismatch",
        )
        self.assertEqual(
            validate_patch_payload({"operations": [{"type": "upsert", "id": "a", "record": {"bogus": "1"}}]}).code,
            "records_payload_unknown_field",
        )
        self.assertEqual(
            validate_patch_payload({"operations": [{"type": "upsert", "id": "a", "record": {"payment2": "x"}}]}).code,
            "records_payload_invalid_amount",
        )

    def test_upsert_records_get_amount_normalization(self) -> None:
        result = validate_patch_payload(
            {"operations": [{"type": "upsert", "id": "a", "record": {"payment1": "20", "payment1Date": "2024-01-02"}}]}
        )
        self.assertTrue(result.ok)
        self.assertEqual(
            result.operations[0].record,
            {"payment1": "20", "payment1Date": "01/02/2024", "totalPayments": "$20.00", "id": "a"},
        )

    def test_rejects_too_many_operations(self) -> None:
        result = validate_patch_payload({"operations": [{"type": "delete", "id": "a"}] * 3}, max_operations=2)
        self.assertEqual(result.code, "records_patch_too_many_operations")
        self.assertEqual(result.http_status, 413)


class ParseExpectedUpdatedAtTests(unittest.TestCase):
    def test_missing_key_is_precondition_required(self) -> None:
        result = parse_expected_updated_at({"records": []})
        self.assertFalse(result.ok)
        self.assertIs(result.expected_updated_at, NOT_PROVIDED)
        self.assertEqual(result.code, "records_precondition_required")
        self.assertEqual(result.http_status, 428)

    def test_null_and_empty_mean_empty_store(self) -> None:
        self.assertIsNone(parse_expected_updated_at({"expectedUpdatedAt": None}).expected_updated_at)
        self.assertTrue(parse_expected_updated_at({"expectedUpdatedAt": ""}).ok)

    def test_invalid_token(self) -> None:
        for raw in (5, "not-a-date"):
            result = parse_expected_updated_at({"expectedUpdatedAt": raw})
            self.assertFalse(result.ok)
            self.assertEqual(result.code, "invalid_expected_updated_at")
            self.assertEqual(result.http_status, 400)

    def test_valid_token_is_canonical(self) -> None:
        result = parse_expected_updated_at({"expectedUpdatedAt": "2024-01-01T00:00:00Z"})
        self.assertTrue(result.ok)
        self.assertEqual(result.expected_updated_at, "2024-01-01T00:00:00.000000+00:00")


if __name__ == "__main__":
    unittest.main()
