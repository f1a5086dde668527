"""
Upload Queue Coordinator
------------------------
This module drains uploaded files one at a time through the batch processor.
When a file needs human judgement it is parked in the single review slot and the
coordinator waits, without polling or timeout, until the review surface either
supplies a final decision or cancels the review. Only then is the next file taken.
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from qurban_upload.core.batch_processor import BatchProcessor
from qurban_upload.core.exceptions import EntryNotFoundError, EntryStateError, RecordKindError
from qurban_upload.core.review_policy import ReviewPolicy
from qurban_upload.models.data_models import (
    DuplicateDetectionConfig,
    ProcessedBatchResult,
    QueueEntry,
    RecordKind,
    UploadAuditEntry,
    UploadStatus,
)
from qurban_upload.storage.base import RecordStore
from qurban_upload.utils.file_parsing import ParsedUpload, detect_record_kind, read_upload

logger = logging.getLogger(__name__)

Parser = Callable[[str, bytes], ParsedUpload]

# Progress reported to the status observer for each lifecycle step
PROGRESS = {
    UploadStatus.PENDING: 0,
    UploadStatus.UPLOADING: 10,
    UploadStatus.DETECTING_DUPLICATES: 30,
    UploadStatus.REVIEWING_DUPLICATES: 60,
    UploadStatus.PROCESSING: 80,
    UploadStatus.COMPLETED: 100,
    UploadStatus.ERROR: 100,
}

ACTIVE_STATUSES = (
    UploadStatus.UPLOADING,
    UploadStatus.DETECTING_DUPLICATES,
    UploadStatus.REVIEWING_DUPLICATES,
    UploadStatus.PROCESSING,
)


@dataclass
class _ReviewSlot:
    """The one file currently waiting for a human. None on the future means cancelled."""
    entry_id: str
    decision: "asyncio.Future[Optional[DuplicateDetectionConfig]]"


@dataclass
class _Classification:
    kind: RecordKind
    rows: List[Dict[str, Any]]
    existing: List[Dict[str, Any]]
    result: ProcessedBatchResult


class UploadQueueCoordinator:
    """
    Sequential coordinator for uploaded files.

    Shared state is limited to the FIFO queue of entry ids and the single review
    slot. A single worker (run() or drain()) consumes the queue; a second concurrent
    worker is refused, so no two files are ever under review at the same time.
    """

    def __init__(
        self,
        store: RecordStore,
        parser: Parser = read_upload,
        processor: Optional[BatchProcessor] = None,
        policy: Optional[ReviewPolicy] = None,
        default_config: Optional[DuplicateDetectionConfig] = None,
    ):
        self._store = store
        self._parser = parser
        self._processor = processor or BatchProcessor()
        self._policy = policy or ReviewPolicy()
        self._default_config = default_config or DuplicateDetectionConfig()

        self._entries: Dict[str, QueueEntry] = {}
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._queued: Set[str] = set()
        self._review: Optional[_ReviewSlot] = None
        self._review_opened = asyncio.Event()
        self._worker_active = False

    # --- Intake ------------------------------------------------------------

    def enqueue(
        self,
        filename: str,
        content: bytes,
        kind: Optional[RecordKind] = None,
        config: Optional[DuplicateDetectionConfig] = None,
    ) -> QueueEntry:
        """
        Accept an uploaded file into the queue.

        Args:
            filename: Original file name
            content: Raw file bytes
            kind: Record kind, or None to detect it from the column headers
            config: Detection policy for this file, defaults to the coordinator's

        Returns:
            QueueEntry: The new entry, in status pending
        """
        entry = QueueEntry(
            filename=filename,
            content=content,
            kind=kind,
            config=config or self._default_config,
        )
        self._entries[entry.id] = entry
        self._schedule(entry)
        logger.info(f"Queued {filename} as entry {entry.id}")
        return entry

    def _schedule(self, entry: QueueEntry) -> None:
        self._queued.add(entry.id)
        self._queue.put_nowait(entry.id)

    def retry(self, entry_id: str) -> QueueEntry:
        """Put a failed or cancelled entry back into the queue."""
        entry = self.get_entry(entry_id)
        if entry.id in self._queued or entry.status not in (UploadStatus.PENDING, UploadStatus.ERROR):
            raise EntryStateError(f"Entry {entry_id} cannot be retried while {entry.status.value}")

        entry.error = None
        entry.result = None
        entry.transition(UploadStatus.PENDING, PROGRESS[UploadStatus.PENDING])
        self._schedule(entry)
        logger.info(f"Retrying {entry.filename} (entry {entry.id})")
        return entry

    def remove(self, entry_id: str) -> None:
        """Forget an entry. Entries that are being worked on cannot be removed."""
        entry = self.get_entry(entry_id)
        if entry.status in ACTIVE_STATUSES:
            raise EntryStateError(f"Entry {entry_id} cannot be removed while {entry.status.value}")
        # A queued id left behind is discarded by the worker
        del self._entries[entry_id]
        self._queued.discard(entry_id)

    # --- Status observer ---------------------------------------------------

    def get_entry(self, entry_id: str) -> QueueEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise EntryNotFoundError(f"No upload with id {entry_id}") from None

    def list_entries(self) -> List[QueueEntry]:
        return list(self._entries.values())

    @property
    def pending_count(self) -> int:
        return len(self._queued)

    @property
    def current_review(self) -> Optional[QueueEntry]:
        """The entry waiting for a decision, if any."""
        slot = self._review
        if slot is None:
            return None
        return self._entries.get(slot.entry_id)

    async def wait_for_review(self) -> QueueEntry:
        """Block until some entry is waiting for a decision and return it."""
        while True:
            await self._review_opened.wait()
            entry = self.current_review
            if entry is not None:
                return entry

    # --- Review surface ----------------------------------------------------

    def submit_decision(self, entry_id: str, config: DuplicateDetectionConfig) -> None:
        """
        Resolve the review of an entry with a final policy.

        Args:
            entry_id: Entry currently under review
            config: Policy with no deferred rows (action is not prompt)

        Raises:
            ValueError: If the config still defers rows to review
            EntryStateError: If the entry is not the one under review
        """
        if not config.is_final:
            raise ValueError("A review decision must resolve every row: action cannot be 'prompt'")

        slot = self._review
        if slot is None or slot.entry_id != entry_id or slot.decision.done():
            raise EntryStateError(f"Entry {entry_id} is not awaiting review")

        slot.decision.set_result(config)
        logger.info(f"Review decision received for entry {entry_id}: action={config.action.value}")

    def cancel_review(self, entry_id: str) -> bool:
        """
        Cancel the review of an entry. Nothing from the file is persisted.

        Cancelling an entry that is not under review, or whose review was already
        decided or cancelled, does nothing.

        Returns:
            bool: True if this call cancelled a pending review
        """
        slot = self._review
        if slot is None or slot.entry_id != entry_id or slot.decision.done():
            logger.debug(f"Ignoring cancel for entry {entry_id}: not awaiting review")
            return False

        slot.decision.set_result(None)
        logger.info(f"Review cancelled for entry {entry_id}")
        return True

    # --- Worker ------------------------------------------------------------

    async def run(self) -> None:
        """Consume the queue forever. Meant to run as a single background task."""
        self._claim_worker()
        try:
            while True:
                entry_id = await self._queue.get()
                try:
                    await self._process(entry_id)
                finally:
                    self._queue.task_done()
        finally:
            self._worker_active = False

    async def drain(self) -> None:
        """Process queued entries until the queue is empty."""
        self._claim_worker()
        try:
            while not self._queue.empty():
                entry_id = self._queue.get_nowait()
                try:
                    await self._process(entry_id)
                finally:
                    self._queue.task_done()
        finally:
            self._worker_active = False

    async def join(self) -> None:
        """Wait until every queued entry has been handled by the worker."""
        await self._queue.join()

    def _claim_worker(self) -> None:
        if self._worker_active:
            raise RuntimeError("The upload queue already has a worker")
        self._worker_active = True

    async def _process(self, entry_id: str) -> None:
        self._queued.discard(entry_id)
        entry = self._entries.get(entry_id)
        if entry is None or entry.status != UploadStatus.PENDING:
            logger.info(f"Discarding stale queue item {entry_id}")
            return

        try:
            classification = await self._classify(entry)
        except Exception as e:
            self._fail(entry, e)
            return

        config = entry.config
        result = classification.result
        entry.result = result

        if self._policy.requires_review(result, config):
            decision = await self._await_review(entry)
            if decision is None:
                entry.result = None
                entry.transition(UploadStatus.PENDING, PROGRESS[UploadStatus.PENDING])
                return
            config = decision
        elif not config.is_final:
            config = config.resolved(self._policy.auto_resolve_action)

        try:
            await self._finalize(entry, classification, config)
        except Exception as e:
            self._fail(entry, e)

    async def _classify(self, entry: QueueEntry) -> _Classification:
        entry.transition(UploadStatus.UPLOADING, PROGRESS[UploadStatus.UPLOADING])
        loop = asyncio.get_running_loop()
        parsed = await loop.run_in_executor(None, self._parser, entry.filename, entry.content)
        rows = parsed.rows

        kind = entry.kind or detect_record_kind(parsed.columns)
        if kind is None:
            raise RecordKindError(f"Could not detect the record kind of {entry.filename} from its columns")
        entry.kind = kind

        entry.transition(UploadStatus.DETECTING_DUPLICATES, PROGRESS[UploadStatus.DETECTING_DUPLICATES])
        existing = await self._store.fetch_existing(kind)
        result = self._processor.process(rows, existing, entry.config, kind)
        return _Classification(kind=kind, rows=rows, existing=existing, result=result)

    async def _await_review(self, entry: QueueEntry) -> Optional[DuplicateDetectionConfig]:
        slot = _ReviewSlot(entry_id=entry.id, decision=asyncio.get_running_loop().create_future())
        self._review = slot
        entry.transition(UploadStatus.REVIEWING_DUPLICATES, PROGRESS[UploadStatus.REVIEWING_DUPLICATES])
        self._review_opened.set()
        logger.info(
            f"{entry.filename} is waiting for review: "
            f"{len(entry.result.duplicates.awaiting_review())} duplicates need a decision"
        )

        try:
            return await slot.decision
        except asyncio.CancelledError:
            entry.transition(UploadStatus.PENDING, PROGRESS[UploadStatus.PENDING])
            raise
        finally:
            self._review = None
            self._review_opened.clear()

    async def _finalize(
        self, entry: QueueEntry, classification: _Classification, config: DuplicateDetectionConfig
    ) -> None:
        entry.transition(UploadStatus.PROCESSING, PROGRESS[UploadStatus.PROCESSING])

        result = classification.result
        if config != entry.config:
            result = self._processor.process(classification.rows, classification.existing, config, classification.kind)

        await self._store.save(classification.kind, result.new_records)
        await self._store.save_audit_entry(UploadAuditEntry.for_entry(entry, result, UploadStatus.COMPLETED.value))

        entry.result = result
        entry.config = config
        entry.transition(UploadStatus.COMPLETED, PROGRESS[UploadStatus.COMPLETED])
        logger.info(
            f"Completed {entry.filename}: {len(result.new_records)} records saved, "
            f"{result.stats.skipped} skipped, {result.stats.errors} errors"
        )

    def _fail(self, entry: QueueEntry, error: Exception) -> None:
        logger.error(f"Error processing {entry.filename}: {str(error)}\n{traceback.format_exc()}")
        entry.error = str(error) or error.__class__.__name__
        entry.transition(UploadStatus.ERROR, PROGRESS[UploadStatus.ERROR])
