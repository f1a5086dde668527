"""
In-Memory Record Store
----------------------
A process-local RecordStore. Used when no hosted database is configured, and by
the tests.
"""

import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from qurban_upload.models.data_models import RecordKind, UploadAuditEntry, utc_now_iso

logger = logging.getLogger(__name__)


class InMemoryRecordStore:
    """
    Keeps rows per record kind in insertion order.

    Saving a row whose id is already stored replaces that row; any other row gets a
    new id and is appended.
    """

    def __init__(self, initial: Optional[Dict[RecordKind, List[Dict[str, Any]]]] = None):
        self._rows: Dict[RecordKind, List[Dict[str, Any]]] = {kind: [] for kind in RecordKind}
        self._audit: List[UploadAuditEntry] = []
        self._lock = asyncio.Lock()
        for kind, rows in (initial or {}).items():
            for row in rows:
                self._insert(RecordKind(kind), row)

    def _insert(self, kind: RecordKind, row: Dict[str, Any]) -> None:
        row = copy.deepcopy(row)
        rows = self._rows[kind]
        row_id = row.get("id")
        if row_id:
            for position, stored in enumerate(rows):
                if stored.get("id") == row_id:
                    rows[position] = row
                    return
        else:
            row["id"] = str(uuid.uuid4())
            row.setdefault("created_at", utc_now_iso())
        rows.append(row)

    async def fetch_existing(self, kind: RecordKind) -> List[Dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(self._rows[RecordKind(kind)])

    async def save(self, kind: RecordKind, records: Sequence[Dict[str, Any]]) -> None:
        async with self._lock:
            for record in records:
                self._insert(RecordKind(kind), record)
        logger.info(f"Saved {len(records)} {RecordKind(kind).value} records")

    async def save_audit_entry(self, entry: UploadAuditEntry) -> None:
        async with self._lock:
            self._audit.append(entry)

    @property
    def audit_log(self) -> List[UploadAuditEntry]:
        return list(self._audit)

    def rows(self, kind: RecordKind) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._rows[RecordKind(kind)])
