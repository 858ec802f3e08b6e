from __future__ import annotations

import sqlite3
import unittest
from http import HTTPStatus
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

from ledger_records.contracts import RecordsErrorKind
from ledger_records.repository import RecordsRepository, RecordsTransaction
from ledger_records.router import READ_SOURCE_LEGACY, READ_SOURCE_MIRROR, MigrationPhase, MigrationRouter
from ledger_records.service import RecordsService


class RecordsServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._td = TemporaryDirectory()
        self.repo = RecordsRepository(backend="sqlite", sqlite_path=str(Path(self._td.name) / "service.sqlite3"))
        self.repo.init_schema()
        self.router = MigrationRouter(MigrationPhase.DUAL_WRITE)
        self.service = RecordsService(repository=self.repo, router=self.router, max_records=10, max_patch_operations=5)

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_end_to_end_scenario(self) -> None:
        status, payload = self.service.handle_get()
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(payload, {"records": [], "updatedAt": None})

        status, payload = self.service.handle_put(
            {"records": [{"id": "a", "clientName": "Acme"}], "expectedUpdatedAt": None}
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertTrue(payload["ok"])
        t1 = payload["updatedAt"]
        self.assertTrue(t1)

        status, payload = self.service.handle_put(
            {"records": [{"id": "a", "clientName": "Acme"}], "expectedUpdatedAt": None}
        )
        self.assertEqual(status, HTTPStatus.CONFLICT)
        self.assertEqual(payload["code"], "records_conflict")
        self.assertEqual(payload["currentUpdatedAt"], t1)

        status, payload = self.service.handle_patch(
            {
                "operations": [{"type": "upsert", "id": "a", "record": {"id": "a", "clientName": "Acme Renamed"}}],
                "expectedUpdatedAt": t1,
            }
        )
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(payload["appliedOperations"], 1)
        t2 = payload["updatedAt"]
        self.assertNotEqual(t1, t2)

        status, payload = self.service.handle_get()
        self.assertEqual(payload["updatedAt"], t2)
        self.assertEqual(payload["records"][0]["clientName"], "Acme Renamed")

        status, payload = self.service.handle_patch(
            {"operations": [{"type": "delete", "id": "a"}], "expectedUpdatedAt": t2}
        )
        self.assertEqual(status, HTTPStatus.OK)
        status, payload = self.service.handle_get()
        self.assertEqual(payload["records"], [])

    def test_partial_patch_keeps_existing_fields(self) -> None:
        status, payload = self.service.handle_put(
            {"records": [{"id": "a", "clientName": "Acme", "companyName": "Acme LLC"}], "expectedUpdatedAt": None}
        )
        status, payload = self.service.handle_patch(
            {
                "operations": [{"type": "upsert", "id": "a", "record": {"notes": "called"}}],
                "expectedUpdatedAt": payload["updatedAt"],
            }
        )
        self.assertEqual(status, HTTPStatus.OK)
        status, payload = self.service.handle_get()
        record = payload["records"][0]
        self.assertEqual(record["clientName"], "Acme")
        self.assertEqual(record["companyName"], "Acme LLC")
        self.assertEqual(record["notes"], "called")

    def test_missing_token_is_428(self) -> None:
        status, payload = self.service.handle_put({"records": [{"id": "a"}]})
        self.assertEqual(status, HTTPStatus.PRECONDITION_REQUIRED)
        self.assertEqual(payload["code"], "records_precondition_required")
        outcome = self.service.put([{"id": "a"}])
        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error.kind, RecordsErrorKind.PRECONDITION_REQUIRED)
        self.assertEqual(outcome.http_status, 428)

    def test_invalid_token_is_400(self) -> None:
        status, payload = self.service.handle_patch({"operations": [], "expectedUpdatedAt": "soon"})
        self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        self.assertEqual(payload["code"], "invalid_expected_updated_at")

    def test_payload_validation_errors(self) -> None:
        status, payload = self.service.handle_put({"records": [{"id": "a", "color": "red"}], "expectedUpdatedAt": None})
        self.assertEqual(status, HTTPStatus.BAD_REQUEST)
        self.assertEqual(payload["code"], "records_payload_unknown_field")

        status, payload = self.service.handle_put(
            {"records": [{"id": str(index)} for index in range(11)], "expectedUpdatedAt": None}
        )
        self.assertEqual(status, HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

        status, payload = self.service.handle_patch(
            {"operations": [{"type": "delete", "id": "a"}] * 6, "expectedUpdatedAt": None}
        )
        self.assertEqual(status, HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
        self.assertEqual(payload["code"], "records_patch_too_many_operations")

    def test_empty_patch_returns_current_token(self) -> None:
        status, payload = self.service.handle_put({"records": [{"id": "a"}], "expectedUpdatedAt": None})
        token = payload["updatedAt"]
        status, payload = self.service.handle_patch({"operations": [], "expectedUpdatedAt": token})
        self.assertEqual(status, HTTPStatus.OK)
        self.assertEqual(payload, {"ok": True, "updatedAt": token, "appliedOperations": 0})

    def test_desync_is_500_and_rolls_back(self) -> None:
        status, payload = self.service.handle_put({"records": [{"id": "a"}], "expectedUpdatedAt": None})
        token = payload["updatedAt"]
        with patch.object(RecordsTransaction, "insert_mirror_row", side_effect=RuntimeError("forced")):
            with self.assertLogs("ledger_records.dual_write", level="ERROR"):
                status, payload = self.service.handle_put(
                    {"records": [{"id": "a"}, {"id": "b"}], "expectedUpdatedAt": token}
                )
        self.assertEqual(status, HTTPStatus.INTERNAL_SERVER_ERROR)
        self.assertEqual(payload["code"], "records_v2_dual_write_desync")
        status, payload = self.service.handle_get()
        self.assertEqual(payload, {"records": [{"id": "a"}], "updatedAt": token})

    def test_database_unavailable_is_503(self) -> None:
        with patch.object(RecordsRepository, "write_transaction", side_effect=sqlite3.OperationalError("database is locked")):
            with self.assertLogs("ledger_records.service", level="WARNING"):
                status, payload = self.service.handle_put({"records": [], "expectedUpdatedAt": None})
        self.assertEqual(status, HTTPStatus.SERVICE_UNAVAILABLE)
        self.assertEqual(payload["code"], "records_db_unavailable")

        with patch.object(RecordsRepository, "read_snapshot", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertLogs("ledger_records.service", level="WARNING"):
                status, payload = self.service.handle_get()
        self.assertEqual(status, HTTPStatus.SERVICE_UNAVAILABLE)

    def test_outage_during_mirror_write_is_503_not_desync(self) -> None:
        status, payload = self.service.handle_put({"records": [{"id": "a"}], "expectedUpdatedAt": None})
        token = payload["updatedAt"]
        with patch.object(RecordsTransaction, "insert_mirror_row", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertLogs("ledger_records.service", level="WARNING"):
                status, payload = self.service.handle_put(
                    {"records": [{"id": "a"}, {"id": "b"}], "expectedUpdatedAt": token}
                )
        self.assertEqual(status, HTTPStatus.SERVICE_UNAVAILABLE)
        self.assertEqual(payload["code"], "records_db_unavailable")
        self.assertEqual(self.service.coordinator.status["desync"], 0)
        status, payload = self.service.handle_get()
        self.assertEqual(payload, {"records": [{"id": "a"}], "updatedAt": token})

    def test_unexpected_errors_are_500(self) -> None:
        with patch.object(RecordsRepository, "write_transaction", side_effect=KeyError("boom")):
            with self.assertLogs("ledger_records.service", level="ERROR"):
                status, payload = self.service.handle_put({"records": [], "expectedUpdatedAt": None})
        self.assertEqual(status, HTTPStatus.INTERNAL_SERVER_ERROR)
        self.assertEqual(payload["code"], "records_write_failed")

    def test_read_source_follows_phase(self) -> None:
        status, payload = self.service.handle_put(
            {"records": [{"id": "b"}, {"id": "a"}], "expectedUpdatedAt": None}
        )
        token = payload["updatedAt"]
        self.assertEqual(self.service.get().source, READ_SOURCE_LEGACY)

        self.router.set_phase(MigrationPhase.CUTOVER_READ)
        result = self.service.get()
        self.assertEqual(result.source, READ_SOURCE_MIRROR)
        self.assertEqual(result.records, [{"id": "b"}, {"id": "a"}])
        self.assertEqual(result.updated_at, token)

    def test_compare_scheduled_only_when_enabled(self) -> None:
        with patch.object(self.service.comparator, "schedule") as schedule:
            self.service.get()
            schedule.assert_not_called()
            self.router.set_dual_read_compare(True)
            self.service.get(requested_by="ops")
            schedule.assert_called_once_with([], None, requested_by="ops")

    def test_status_snapshot(self) -> None:
        self.service.handle_put({"records": [{"id": "a"}], "expectedUpdatedAt": None})
        status = self.service.status()
        self.assertEqual(status["router"]["phase"], "dual_write")
        self.assertEqual(status["dual_write"]["success"], 1)
        self.assertEqual(status["dual_read_compare"]["attempts"], 0)


if __name__ == "__main__":
    unittest.main()
