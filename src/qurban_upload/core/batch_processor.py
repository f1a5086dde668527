"""
Batch Processor
---------------
This module runs a duplicate detector over every row of an uploaded file, applies
the resolution policy, and collects new records, categorized duplicates and
row-level errors into one ProcessedBatchResult.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from qurban_upload.core.detectors import get_detector
from qurban_upload.models.data_models import (
    DuplicateAction,
    DuplicateDetectionConfig,
    DuplicatePair,
    ProcessedBatchResult,
    RecordKind,
    RowError,
    UploadRecord,
    utc_now_iso,
)
from qurban_upload.utils.text_processing import is_blank

logger = logging.getLogger(__name__)

# Errors that mark a row as malformed rather than the batch as broken
ROW_ERRORS = (ValidationError, ValueError, TypeError, AttributeError)


def merge_records(new_record: Dict[str, Any], existing_record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge an incoming record into an existing one.

    Starts from the existing record and overlays every incoming field that carries
    data. None, NaN and empty strings never overwrite existing values. The merged
    record is stamped with a fresh updated_at timestamp.

    Args:
        new_record: The incoming row
        existing_record: The stored row it duplicates

    Returns:
        Dict[str, Any]: The merged row
    """
    merged = dict(existing_record)
    merged.update({key: value for key, value in new_record.items() if not is_blank(value)})
    merged["updated_at"] = utc_now_iso()
    return merged


def replace_record(new_record: Dict[str, Any], existing_record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the row that replaces an existing record with the incoming data.

    The incoming row is taken as is, but carries the existing record's id so the
    store overwrites that record instead of inserting a second copy.
    """
    replacement = dict(new_record)
    existing_id = existing_record.get("id")
    if existing_id:
        replacement["id"] = existing_id
    return replacement


def resolve_duplicate(
    new_record: Dict[str, Any], existing_record: Optional[Dict[str, Any]], action: DuplicateAction
) -> Optional[Dict[str, Any]]:
    """Row to persist for a duplicate resolved with action, or None when nothing is persisted."""
    if action == DuplicateAction.UPDATE:
        return replace_record(new_record, existing_record or {})
    if action == DuplicateAction.MERGE:
        return merge_records(new_record, existing_record or {})
    return None


def format_row_error(error: Exception) -> str:
    """Human-readable message for a malformed row."""
    if isinstance(error, ValidationError):
        problems = []
        for detail in error.errors():
            location = ".".join(str(part) for part in detail.get("loc", ())) or "record"
            problems.append(f"{location}: {detail.get('msg')}")
        return "; ".join(problems)
    return str(error) or error.__class__.__name__


class BatchProcessor:
    """
    Classifies and resolves a whole batch of incoming rows.

    Rows accepted into new_records join the working corpus as they are accepted, so
    a row that repeats an earlier row of the same file is caught as a duplicate.
    """

    def _load_corpus(self, record_type, existing_corpus: Sequence[Dict[str, Any]]) -> List[UploadRecord]:
        corpus = []
        for position, row in enumerate(existing_corpus):
            try:
                corpus.append(record_type.from_row(row))
            except ValidationError as e:
                logger.warning(
                    f"Ignoring existing {record_type.__name__} at position {position} "
                    f"(id={row.get('id')}): {format_row_error(e)}"
                )
        return corpus

    def process(
        self,
        records: Sequence[Dict[str, Any]],
        existing_corpus: Sequence[Dict[str, Any]],
        config: DuplicateDetectionConfig,
        kind: RecordKind,
    ) -> ProcessedBatchResult:
        """
        Classify every incoming row and apply the resolution policy.

        For each row, in input order:
        - malformed rows are recorded in errors and processing continues
        - non-duplicates go to new_records
        - duplicates go to the bucket of their match type and are then resolved
          with the row's action (config.row_actions, falling back to config.action):
          prompt leaves them for review, skip drops them, update replaces the existing
          record with the incoming row, merge accepts the existing row overlaid with
          the incoming data
        - a duplicate whose resolved row fails validation is recorded in errors
          instead of a bucket

        Args:
            records: Parsed rows of the uploaded file
            existing_corpus: Rows already persisted for this record kind
            config: Detection and resolution policy
            kind: Record kind of the file

        Returns:
            ProcessedBatchResult: Classification and resolution of the whole batch
        """
        detector = get_detector(kind)
        corpus = self._load_corpus(detector.record_type, existing_corpus)

        result = ProcessedBatchResult(kind=kind, total_records=len(records))
        result.stats.total_processed = len(records)

        for index, raw in enumerate(records):
            row = index + 1
            try:
                incoming = detector.record_type.from_row(raw)
                match = detector.detect(incoming, corpus, config)
                action = config.action_for_row(row)
                accepted_row = accepted_record = None
                if match.is_duplicate:
                    accepted_row = resolve_duplicate(raw, match.existing_record, action)
                    if accepted_row is not None:
                        accepted_record = detector.record_type.from_row(accepted_row)
            except ROW_ERRORS as e:
                message = format_row_error(e)
                logger.warning(f"Row {row} of {kind.value} upload is malformed: {message}")
                result.errors.append(RowError(row=row, data=dict(raw), message=message, severity="error"))
                result.stats.errors += 1
                continue

            if not match.is_duplicate:
                result.new_records.append(dict(raw))
                result.stats.new_added += 1
                corpus.append(incoming)
                continue

            pair = DuplicatePair(
                row=row,
                new=dict(raw),
                existing=match.existing_record,
                confidence=match.confidence,
                matching_fields=match.matching_fields,
                suggested_action=match.suggested_action,
                resolution=None if action == DuplicateAction.PROMPT else action,
            )
            result.duplicates.bucket(match.match_type).append(pair)

            if action == DuplicateAction.SKIP:
                result.stats.skipped += 1
            elif action == DuplicateAction.UPDATE:
                result.stats.updated += 1
            elif action == DuplicateAction.MERGE:
                result.stats.merged += 1

            if accepted_row is not None:
                result.new_records.append(accepted_row)
                corpus.append(accepted_record)

        logger.info(
            f"Processed {kind.value} batch: {result.total_records} rows, "
            f"{result.stats.new_added} new, "
            f"{len(result.duplicates.exact)} exact / {len(result.duplicates.fuzzy)} fuzzy / "
            f"{len(result.duplicates.partial)} partial duplicates, "
            f"{result.stats.errors} errors"
        )
        return result
