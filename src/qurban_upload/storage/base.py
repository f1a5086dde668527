"""
Record Store Interface
----------------------
The persistence contract the upload pipeline depends on. Implementations raise
PersistenceError when a read or write fails.
"""

from typing import Any, Dict, List, Protocol, Sequence

from qurban_upload.models.data_models import RecordKind, UploadAuditEntry


class RecordStore(Protocol):
    async def fetch_existing(self, kind: RecordKind) -> List[Dict[str, Any]]:
        """Return every persisted row of the given kind."""
        ...

    async def save(self, kind: RecordKind, records: Sequence[Dict[str, Any]]) -> None:
        """Persist accepted rows. Rows carrying an id replace the stored row."""
        ...

    async def save_audit_entry(self, entry: UploadAuditEntry) -> None:
        """Append an upload-history entry."""
        ...
