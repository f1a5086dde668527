"""
Supabase Record Store
---------------------
RecordStore backed by the hosted Supabase database, spoken to through its
PostgREST interface with aiohttp.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from qurban_upload.core.exceptions import PersistenceError
from qurban_upload.models.data_models import RecordKind, UploadAuditEntry

logger = logging.getLogger(__name__)

TABLES = {
    RecordKind.MUZAKKI: "muzakki",
    RecordKind.DISTRIBUSI: "distribusi",
}
UPLOAD_HISTORY_TABLE = "upload_history"

PAGE_SIZE = 1000
REQUEST_TIMEOUT_SECONDS = 30


class SupabaseRecordStore:
    """
    Reads and writes upload rows through the Supabase REST endpoint.

    Rows that carry an id are upserted (merge-duplicates on the primary key); rows
    without one are inserted and get their id from the database.
    """

    def __init__(self, url: str, api_key: str, page_size: int = PAGE_SIZE, timeout: Optional[float] = None):
        self.base_url = url.rstrip("/") + "/rest/v1"
        self.api_key = api_key
        self.page_size = page_size
        self.timeout = aiohttp.ClientTimeout(total=timeout or REQUEST_TIMEOUT_SECONDS)

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def table_url(self, table: str) -> str:
        return f"{self.base_url}/{table}"

    async def _request(
        self,
        session: aiohttp.ClientSession,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        try:
            async with session.request(
                method,
                self.table_url(table),
                params=params,
                json=json,
                headers=self._headers(prefer),
                timeout=self.timeout,
            ) as response:
                if response.status >= 400:
                    response_text = await response.text()
                    raise PersistenceError(
                        f"Supabase {method} {table} failed: {response.status} - {response_text}"
                    )
                if response.status == 204 or response.content_length == 0:
                    return None
                return await response.json()
        except asyncio.TimeoutError as e:
            raise PersistenceError(f"Timeout calling Supabase {method} {table}") from e
        except aiohttp.ClientError as e:
            raise PersistenceError(f"Error calling Supabase {method} {table}: {str(e)}") from e

    async def fetch_existing(self, kind: RecordKind) -> List[Dict[str, Any]]:
        table = TABLES[RecordKind(kind)]
        rows: List[Dict[str, Any]] = []
        async with aiohttp.ClientSession() as session:
            offset = 0
            while True:
                page = await self._request(
                    session,
                    "GET",
                    table,
                    params={"select": "*", "order": "created_at", "offset": offset, "limit": self.page_size},
                )
                page = page or []
                rows.extend(page)
                if len(page) < self.page_size:
                    break
                offset += self.page_size

        logger.info(f"Fetched {len(rows)} existing {table} records")
        return rows

    async def save(self, kind: RecordKind, records: Sequence[Dict[str, Any]]) -> None:
        table = TABLES[RecordKind(kind)]
        updates = [dict(record) for record in records if record.get("id")]
        inserts = [
            {key: value for key, value in record.items() if key != "id"}
            for record in records
            if not record.get("id")
        ]

        async with aiohttp.ClientSession() as session:
            if updates:
                await self._request(
                    session, "POST", table, json=updates,
                    prefer="resolution=merge-duplicates,return=minimal",
                )
            if inserts:
                await self._request(session, "POST", table, json=inserts, prefer="return=minimal")

        logger.info(f"Saved {len(inserts)} new and {len(updates)} updated {table} records")

    async def save_audit_entry(self, entry: UploadAuditEntry) -> None:
        async with aiohttp.ClientSession() as session:
            await self._request(
                session, "POST", UPLOAD_HISTORY_TABLE,
                json=[entry.model_dump(mode="json")], prefer="return=minimal",
            )
