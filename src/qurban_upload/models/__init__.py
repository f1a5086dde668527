"""
Data Models Module
Contains Pydantic models for records, detection policy, results and queue entries.
"""

from .data_models import (
    RecordKind,
    MatchType,
    DuplicateAction,
    UploadStatus,
    UploadRecord,
    DonorRecord,
    DistributionRecord,
    RECORD_TYPES,
    DuplicateDetectionConfig,
    MatchResult,
    DuplicatePair,
    DuplicateBuckets,
    BatchStats,
    RowError,
    ProcessedBatchResult,
    QueueEntry,
    UploadAuditEntry,
)
