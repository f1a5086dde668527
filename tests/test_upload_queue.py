"""Tests for the sequential upload queue and its review gate."""

import asyncio
import contextlib

import pytest

from builders import donor, to_csv
from qurban_upload.core.exceptions import EntryNotFoundError, EntryStateError, PersistenceError
from qurban_upload.core.review_policy import ReviewPolicy
from qurban_upload.core.upload_queue import UploadQueueCoordinator
from qurban_upload.models.data_models import (
    DuplicateAction,
    DuplicateDetectionConfig,
    RecordKind,
    UploadStatus,
)
from qurban_upload.storage.memory import InMemoryRecordStore

TIMEOUT = 5

NEW_DONORS = [
    "Ahmad Fauzi", "Citra Lestari", "Dewi Sartika", "Eko Prasetyo", "Fajar Nugroho",
    "Gita Permata", "Hendra Wijaya", "Indah Puspita", "Joko Susilo", "Kartika Sari",
]

# Same donor as the one held by the seeded_store fixture
KNOWN_DONOR = donor(name="Budi Santoso", animal="Sapi", value="17500000", phone="0811-2233-44")


class FlakyStore(InMemoryRecordStore):
    """Fails the first `failures` corpus reads."""

    def __init__(self, failures=1, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures

    async def fetch_existing(self, kind):
        if self.failures:
            self.failures -= 1
            raise PersistenceError("database unavailable")
        return await super().fetch_existing(kind)


@contextlib.asynccontextmanager
async def running(coordinator):
    worker = asyncio.create_task(coordinator.run())
    await asyncio.sleep(0)
    try:
        yield worker
    finally:
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker


async def review_of(coordinator, entry_id):
    """Wait until the given entry is the one under review."""
    async def wait():
        while True:
            entry = await coordinator.wait_for_review()
            if entry.id == entry_id:
                return entry
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(wait(), TIMEOUT)


async def settled(coordinator):
    await asyncio.wait_for(coordinator.join(), TIMEOUT)


def clean_file():
    return to_csv([donor(name="Ahmad Fauzi"), donor(name="Citra Lestari", value="3000000")])


def duplicate_file():
    return to_csv([KNOWN_DONOR])


@pytest.mark.asyncio
async def test_clean_file_completes_without_review(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("donatur.csv", clean_file())
    assert entry.status == UploadStatus.PENDING

    async with running(coordinator):
        await settled(coordinator)

    assert entry.status == UploadStatus.COMPLETED
    assert entry.progress == 100
    assert entry.kind == RecordKind.MUZAKKI
    assert entry.result.stats.new_added == 2
    assert len(seeded_store.rows(RecordKind.MUZAKKI)) == 3

    [audit] = seeded_store.audit_log
    assert audit.filename == "donatur.csv"
    assert audit.file_type == RecordKind.MUZAKKI
    assert audit.total_records == 2
    assert audit.successful_records == 2
    assert audit.failed_records == 0
    assert audit.upload_status == "completed"
    assert audit.file_size_bytes == entry.size_bytes


@pytest.mark.asyncio
async def test_review_decision_finishes_the_file(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("donatur.csv", duplicate_file())

    async with running(coordinator):
        reviewed = await review_of(coordinator, entry.id)
        assert reviewed.status == UploadStatus.REVIEWING_DUPLICATES
        assert len(reviewed.result.duplicates.awaiting_review()) == 1

        coordinator.submit_decision(entry.id, DuplicateDetectionConfig(action=DuplicateAction.SKIP))
        await settled(coordinator)

    assert entry.status == UploadStatus.COMPLETED
    assert entry.config.action == DuplicateAction.SKIP
    assert entry.result.stats.skipped == 1
    assert entry.result.duplicates.awaiting_review() == []
    assert coordinator.current_review is None
    assert len(seeded_store.rows(RecordKind.MUZAKKI)) == 1


@pytest.mark.asyncio
async def test_per_row_decision_merges_into_existing_record(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    incoming = dict(KNOWN_DONOR, kota="Bandung")
    entry = coordinator.enqueue("donatur.csv", to_csv([incoming]))

    async with running(coordinator):
        await review_of(coordinator, entry.id)
        decision = DuplicateDetectionConfig(action=DuplicateAction.SKIP, row_actions={1: DuplicateAction.MERGE})
        coordinator.submit_decision(entry.id, decision)
        await settled(coordinator)

    [stored] = seeded_store.rows(RecordKind.MUZAKKI)
    assert stored["kota"] == "Bandung"
    assert "updated_at" in stored
    assert entry.result.stats.merged == 1


@pytest.mark.asyncio
async def test_cancel_returns_entry_to_pending(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    reviewed = coordinator.enqueue("ulang.csv", duplicate_file())
    following = coordinator.enqueue("baru.csv", clean_file())

    async with running(coordinator):
        await review_of(coordinator, reviewed.id)
        assert following.status == UploadStatus.PENDING

        assert coordinator.cancel_review(reviewed.id) is True
        await settled(coordinator)

    assert reviewed.status == UploadStatus.PENDING
    assert reviewed.result is None
    assert following.status == UploadStatus.COMPLETED
    assert [audit.filename for audit in seeded_store.audit_log] == ["baru.csv"]
    # Only the clean file's two donors were added
    assert len(seeded_store.rows(RecordKind.MUZAKKI)) == 3


@pytest.mark.asyncio
async def test_cancel_is_idempotent(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("ulang.csv", duplicate_file())

    async with running(coordinator):
        await review_of(coordinator, entry.id)
        assert coordinator.cancel_review(entry.id) is True
        assert coordinator.cancel_review(entry.id) is False
        await settled(coordinator)

    assert coordinator.cancel_review(entry.id) is False
    assert entry.status == UploadStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_after_decision_does_nothing(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("ulang.csv", duplicate_file())

    async with running(coordinator):
        await review_of(coordinator, entry.id)
        coordinator.submit_decision(entry.id, DuplicateDetectionConfig(action=DuplicateAction.SKIP))
        assert coordinator.cancel_review(entry.id) is False
        await settled(coordinator)

    assert entry.status == UploadStatus.COMPLETED


@pytest.mark.asyncio
async def test_only_one_file_is_under_review(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    first = coordinator.enqueue("satu.csv", duplicate_file())
    second = coordinator.enqueue("dua.csv", duplicate_file())

    async with running(coordinator):
        await review_of(coordinator, first.id)
        await asyncio.sleep(0.05)
        assert coordinator.current_review.id == first.id
        assert second.status == UploadStatus.PENDING

        coordinator.submit_decision(first.id, DuplicateDetectionConfig(action=DuplicateAction.SKIP))
        await review_of(coordinator, second.id)
        assert first.status == UploadStatus.COMPLETED

        coordinator.submit_decision(second.id, DuplicateDetectionConfig(action=DuplicateAction.SKIP))
        await settled(coordinator)

    assert second.status == UploadStatus.COMPLETED


@pytest.mark.asyncio
async def test_mostly_new_file_skips_review(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    rows = [donor(name=name, value=str(1000 * (i + 1))) for i, name in enumerate(NEW_DONORS)]
    entry = coordinator.enqueue("besar.csv", to_csv(rows + [KNOWN_DONOR]))

    async with running(coordinator):
        await settled(coordinator)

    assert entry.status == UploadStatus.COMPLETED
    assert entry.result.stats.new_added == 10
    assert entry.result.stats.skipped == 1
    assert len(seeded_store.rows(RecordKind.MUZAKKI)) == 11


@pytest.mark.asyncio
async def test_auto_resolve_action_is_configurable(seeded_store):
    policy = ReviewPolicy(new_ratio_threshold=0.5, auto_resolve_action=DuplicateAction.UPDATE)
    coordinator = UploadQueueCoordinator(seeded_store, policy=policy)
    rows = [donor(name=name) for name in NEW_DONORS[:2]]
    entry = coordinator.enqueue("kecil.csv", to_csv(rows + [KNOWN_DONOR]))

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert entry.status == UploadStatus.COMPLETED
    assert entry.result.stats.updated == 1
    assert len(seeded_store.rows(RecordKind.MUZAKKI)) == 3


@pytest.mark.asyncio
async def test_update_replaces_the_stored_record(seeded_store):
    [stored] = seeded_store.rows(RecordKind.MUZAKKI)
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue(
        "ulang.csv",
        to_csv([dict(KNOWN_DONOR, telepon="0899")]),
        config=DuplicateDetectionConfig(action=DuplicateAction.UPDATE),
    )

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert entry.status == UploadStatus.COMPLETED
    [replaced] = seeded_store.rows(RecordKind.MUZAKKI)
    assert replaced["id"] == stored["id"]
    assert replaced["telepon"] == "0899"


@pytest.mark.asyncio
async def test_header_only_file_is_detected_from_its_columns(store):
    coordinator = UploadQueueCoordinator(store)
    entry = coordinator.enqueue("kosong.csv", b"nama_muzakki,jenis_hewan,nilai_qurban,telepon\n")

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert entry.status == UploadStatus.COMPLETED
    assert entry.kind == RecordKind.MUZAKKI
    assert entry.result.total_records == 0
    assert store.rows(RecordKind.MUZAKKI) == []


@pytest.mark.asyncio
async def test_final_config_never_waits_for_review(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue(
        "ulang.csv", duplicate_file(), config=DuplicateDetectionConfig(action=DuplicateAction.SKIP)
    )

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert entry.status == UploadStatus.COMPLETED
    assert entry.result.stats.skipped == 1


@pytest.mark.asyncio
async def test_store_failure_marks_entry_and_queue_moves_on():
    store = FlakyStore(failures=1)
    coordinator = UploadQueueCoordinator(store)
    failing = coordinator.enqueue("gagal.csv", clean_file())
    following = coordinator.enqueue("baru.csv", to_csv([donor(name="Lina Marlina")]))

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert failing.status == UploadStatus.ERROR
    assert failing.error == "database unavailable"
    assert following.status == UploadStatus.COMPLETED
    assert [audit.filename for audit in store.audit_log] == ["baru.csv"]

    coordinator.retry(failing.id)
    assert failing.status == UploadStatus.PENDING
    assert failing.error is None

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)
    assert failing.status == UploadStatus.COMPLETED


@pytest.mark.asyncio
async def test_undetectable_record_kind_is_an_error(store):
    coordinator = UploadQueueCoordinator(store)
    entry = coordinator.enqueue("aneh.csv", to_csv([{"kolom": "1"}]))

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert entry.status == UploadStatus.ERROR
    assert "record kind" in entry.error
    assert store.audit_log == []


@pytest.mark.asyncio
async def test_unreadable_file_is_an_error(store):
    coordinator = UploadQueueCoordinator(store)
    entry = coordinator.enqueue("rusak.xlsx", b"this is not a workbook")

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert entry.status == UploadStatus.ERROR
    assert entry.error.startswith("Error reading file rusak.xlsx")


@pytest.mark.asyncio
async def test_explicit_kind_overrides_detection(store):
    coordinator = UploadQueueCoordinator(store)
    entry = coordinator.enqueue("donatur.csv", clean_file(), kind=RecordKind.DISTRIBUSI)

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    # Donor columns do not validate as distribution rows
    assert entry.status == UploadStatus.COMPLETED
    assert entry.result.stats.errors == 2
    assert store.rows(RecordKind.DISTRIBUSI) == []


@pytest.mark.asyncio
async def test_submit_decision_rejects_prompt_and_unknown_entries(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("ulang.csv", duplicate_file())
    other = coordinator.enqueue("baru.csv", clean_file())

    async with running(coordinator):
        await review_of(coordinator, entry.id)

        with pytest.raises(ValueError):
            coordinator.submit_decision(entry.id, DuplicateDetectionConfig(action=DuplicateAction.PROMPT))
        with pytest.raises(EntryStateError):
            coordinator.submit_decision(other.id, DuplicateDetectionConfig(action=DuplicateAction.SKIP))
        assert entry.status == UploadStatus.REVIEWING_DUPLICATES

        with pytest.raises(EntryStateError):
            coordinator.remove(entry.id)

        coordinator.cancel_review(entry.id)
        await settled(coordinator)


@pytest.mark.asyncio
async def test_stopping_the_worker_during_review_leaves_entry_pending(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("ulang.csv", duplicate_file())

    async with running(coordinator):
        await review_of(coordinator, entry.id)

    assert entry.status == UploadStatus.PENDING
    assert coordinator.current_review is None
    assert seeded_store.audit_log == []


@pytest.mark.asyncio
async def test_second_worker_is_refused(store):
    coordinator = UploadQueueCoordinator(store)

    async with running(coordinator):
        with pytest.raises(RuntimeError):
            await coordinator.drain()

    # The flag is released once the first worker stops
    await coordinator.drain()


@pytest.mark.asyncio
async def test_removed_entry_is_discarded(store):
    coordinator = UploadQueueCoordinator(store)
    entry = coordinator.enqueue("donatur.csv", clean_file())
    coordinator.remove(entry.id)

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)

    assert coordinator.list_entries() == []
    assert store.rows(RecordKind.MUZAKKI) == []
    with pytest.raises(EntryNotFoundError):
        coordinator.get_entry(entry.id)


@pytest.mark.asyncio
async def test_retry_rules(store):
    coordinator = UploadQueueCoordinator(store)
    entry = coordinator.enqueue("donatur.csv", clean_file())

    with pytest.raises(EntryStateError):
        coordinator.retry(entry.id)

    await asyncio.wait_for(coordinator.drain(), TIMEOUT)
    assert entry.status == UploadStatus.COMPLETED

    with pytest.raises(EntryStateError):
        coordinator.retry(entry.id)
    with pytest.raises(EntryNotFoundError):
        coordinator.retry("missing")


@pytest.mark.asyncio
async def test_cancelled_entry_can_be_retried(seeded_store):
    coordinator = UploadQueueCoordinator(seeded_store)
    entry = coordinator.enqueue("ulang.csv", duplicate_file())

    async with running(coordinator):
        await review_of(coordinator, entry.id)
        coordinator.cancel_review(entry.id)
        await settled(coordinator)

        assert coordinator.pending_count == 0
        coordinator.retry(entry.id)
        assert coordinator.pending_count == 1

        await review_of(coordinator, entry.id)
        coordinator.submit_decision(entry.id, DuplicateDetectionConfig(action=DuplicateAction.SKIP))
        await settled(coordinator)

    assert entry.status == UploadStatus.COMPLETED
