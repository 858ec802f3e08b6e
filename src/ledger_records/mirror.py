from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .contracts import MirrorCheck, MirrorRow, ReconcileSummary
from .hashing import compute_hashes_by_id, compute_record_hash, record_id
from .repository import RecordsTransaction
from .revision import format_revision_token


def _text(value: Any) -> str:
    return str(value or "").strip()


def build_mirror_row(record: Dict[str, Any], position: int) -> MirrorRow:
    """Project one record onto a mirror row with its indexed columns."""
    payload = dict(record)
    return MirrorRow(
        id=record_id(payload),
        record=payload,
        record_hash=compute_record_hash(payload),
        client_name=_text(payload.get("clientName")),
        company_name=_text(payload.get("companyName")),
        closed_by=_text(payload.get("closedBy")),
        created_at=format_revision_token(payload.get("createdAt")),
        position=int(position),
    )


class RecordMirror:
    """Keeps the per-record table in step with a record set, inside the caller's transaction."""

    def load_records(self, tx: RecordsTransaction) -> List[Dict[str, Any]]:
        return [dict(row.record) for row in tx.list_mirror_rows()]

    def desired_rows(self, next_set: Sequence[Dict[str, Any]]) -> Dict[str, MirrorRow]:
        rows: Dict[str, MirrorRow] = {}
        for position, record in enumerate(next_set):
            if not isinstance(record, dict):
                continue
            row = build_mirror_row(record, position)
            if not row.id:
                continue
            rows[row.id] = row
        return rows

    def reconcile(
        self,
        tx: RecordsTransaction,
        next_set: Sequence[Dict[str, Any]],
        source_state_updated_at: str,
        *,
        delete_missing: bool = True,
        dry_run: bool = False,
    ) -> ReconcileSummary:
        """Insert, update, reposition and delete rows until the table matches ``next_set``.

        Rows whose content hash is unchanged are never rewritten. With
        ``dry_run`` the summary is computed but nothing is written.
        """
        desired = self.desired_rows(next_set)
        existing = {row.id: row for row in tx.list_mirror_rows()}
        summary = ReconcileSummary(expected_count=len(next_set))

        vanished = [row_id for row_id in existing if row_id not in desired]
        if vanished and delete_missing:
            summary.deleted = len(vanished) if dry_run else tx.delete_mirror_rows(vanished)

        for row_id, row in desired.items():
            current = existing.get(row_id)
            if current is None:
                if not dry_run:
                    tx.insert_mirror_row(row, source_state_updated_at=source_state_updated_at)
                summary.inserted += 1
                continue
            if current.record_hash != row.record_hash:
                if not dry_run:
                    tx.update_mirror_row(row, source_state_updated_at=source_state_updated_at)
                summary.updated += 1
                continue
            summary.unchanged += 1
            if current.position != row.position:
                if not dry_run:
                    tx.update_mirror_position(row_id, row.position)
                summary.repositioned += 1

        return summary

    def verify(self, tx: RecordsTransaction, next_set: Sequence[Dict[str, Any]]) -> MirrorCheck:
        expected = compute_hashes_by_id(record for record in next_set if isinstance(record, dict))
        stored = tx.mirror_hashes()
        return MirrorCheck(
            expected_count=len(next_set),
            mirror_count=tx.count_mirror_rows(),
            hash_mismatch_ids=sorted(
                row_id for row_id, row_hash in expected.items() if row_id in stored and stored[row_id] != row_hash
            ),
            missing_ids=sorted(row_id for row_id in expected if row_id not in stored),
            extra_ids=sorted(row_id for row_id in stored if row_id not in expected),
        )
