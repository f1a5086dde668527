"""
Data Models
-----------
This module contains all Pydantic models used by the upload pipeline: the typed
record variants, the detection policy, match results, batch results and the
upload queue entries. These models define the data shapes exchanged with the
parser, the record store and the review surface.
"""

import re
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Dict, Optional, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class RecordKind(str, Enum):
    """The two entity shapes a partner can upload."""
    MUZAKKI = "muzakki"
    DISTRIBUSI = "distribusi"


class MatchType(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    PARTIAL = "partial"


class DuplicateAction(str, Enum):
    """Resolution applied to a detected duplicate."""
    SKIP = "skip"
    UPDATE = "update"
    MERGE = "merge"
    PROMPT = "prompt"


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    DETECTING_DUPLICATES = "detecting_duplicates"
    REVIEWING_DUPLICATES = "reviewing_duplicates"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# --- Typed records ---------------------------------------------------------

_MIDNIGHT_SUFFIX_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[ T]00:00:00$")


class UploadRecord(BaseModel):
    """
    Base class for the typed record variants.

    The key fields used in matching are declared on the subclasses and may not be
    blank once whitespace is stripped; any other column of the spreadsheet is kept
    as an extra field. The untouched source row is kept alongside so that the
    pipeline hands rows back to the store in exactly the shape they came in.
    """
    model_config = ConfigDict(extra="allow", str_strip_whitespace=True, coerce_numbers_to_str=True)

    id: Optional[str] = None

    _source: Dict[str, Any] = PrivateAttr(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        """Validate a raw row. Raises pydantic.ValidationError for malformed rows."""
        record = cls.model_validate(row)
        record._source = dict(row)
        return record

    def as_row(self) -> Dict[str, Any]:
        """Return a copy of the raw row this record was built from."""
        return dict(self._source)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        return str(v)


class DonorRecord(UploadRecord):
    """A muzakki (donor) row."""
    nama_muzakki: str = Field(min_length=1)
    jenis_hewan: str = Field(min_length=1)
    nilai_qurban: float
    telepon: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("telepon", "nomor_telepon"),
    )

    @field_validator("nilai_qurban", mode="before")
    @classmethod
    def _value_not_blank(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("nilai_qurban is required")
        return v


class DistributionRecord(UploadRecord):
    """A distribusi (distribution) row."""
    nama_penerima: str = Field(min_length=1)
    alamat_penerima: str = Field(min_length=1)
    tanggal_distribusi: str = Field(min_length=1)
    jenis_hewan: str = Field(min_length=1)

    @field_validator("tanggal_distribusi", mode="before")
    @classmethod
    def _date_as_text(cls, v: Any) -> Any:
        # Spreadsheet cells may come back as dates or "YYYY-MM-DD 00:00:00"
        if isinstance(v, datetime):
            v = v.date()
        if isinstance(v, date):
            return v.isoformat()
        if isinstance(v, str):
            match = _MIDNIGHT_SUFFIX_RE.match(v.strip())
            if match:
                return match.group(1)
        return v


RECORD_TYPES = {
    RecordKind.MUZAKKI: DonorRecord,
    RecordKind.DISTRIBUSI: DistributionRecord,
}


# --- Detection policy -------------------------------------------------------

class DuplicateDetectionConfig(BaseModel):
    """
    Policy for classifying and resolving duplicates.

    strict_mode disables fuzzy matching. tolerance is the minimum confidence for
    a fuzzy match to count as a duplicate. action is the default resolution;
    row_actions overrides it for individual rows (1-based row numbers), which is
    how the review surface hands back per-row decisions.
    """
    model_config = ConfigDict(frozen=True)

    strict_mode: bool = False
    action: DuplicateAction = DuplicateAction.PROMPT
    tolerance: float = 0.8
    row_actions: Dict[int, DuplicateAction] = Field(default_factory=dict)

    @field_validator("tolerance")
    @classmethod
    def tolerance_in_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"tolerance must be between 0 and 1, got {v}")
        return v

    @field_validator("row_actions")
    @classmethod
    def row_actions_are_final(cls, v: Dict[int, DuplicateAction]) -> Dict[int, DuplicateAction]:
        for row, action in v.items():
            if action == DuplicateAction.PROMPT:
                raise ValueError(f"row {row}: a per-row action cannot be 'prompt'")
        return v

    def action_for_row(self, row: int) -> DuplicateAction:
        return self.row_actions.get(row, self.action)

    @property
    def is_final(self) -> bool:
        """True when no row can end up deferred to a human."""
        return self.action != DuplicateAction.PROMPT

    def resolved(self, action: DuplicateAction) -> "DuplicateDetectionConfig":
        """Copy of this config with the default action replaced."""
        return self.model_copy(update={"action": action})


# --- Results ----------------------------------------------------------------

class MatchResult(BaseModel):
    """Outcome of comparing one incoming record against the existing corpus."""
    is_duplicate: bool
    match_type: MatchType = MatchType.EXACT
    matching_fields: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    existing_record: Optional[Dict[str, Any]] = None
    suggested_action: DuplicateAction = DuplicateAction.SKIP

    @classmethod
    def no_match(cls) -> "MatchResult":
        return cls(is_duplicate=False)


class DuplicatePair(BaseModel):
    """An incoming row together with the existing record it duplicates."""
    row: int
    new: Dict[str, Any]
    existing: Optional[Dict[str, Any]] = None
    confidence: float
    matching_fields: List[str] = Field(default_factory=list)
    suggested_action: DuplicateAction
    resolution: Optional[DuplicateAction] = None


class DuplicateBuckets(BaseModel):
    exact: List[DuplicatePair] = Field(default_factory=list)
    fuzzy: List[DuplicatePair] = Field(default_factory=list)
    partial: List[DuplicatePair] = Field(default_factory=list)

    def bucket(self, match_type: MatchType) -> List[DuplicatePair]:
        return getattr(self, match_type.value)

    def total(self) -> int:
        return len(self.exact) + len(self.fuzzy) + len(self.partial)

    def awaiting_review(self) -> List[DuplicatePair]:
        """Pairs that have not been given a resolution yet, in bucket order."""
        return [pair for pair in self.exact + self.fuzzy + self.partial if pair.resolution is None]


class BatchStats(BaseModel):
    total_processed: int = 0
    new_added: int = 0
    skipped: int = 0
    updated: int = 0
    merged: int = 0
    errors: int = 0


class RowError(BaseModel):
    row: int
    data: Dict[str, Any]
    message: str
    severity: str = "error"


class ProcessedBatchResult(BaseModel):
    """Aggregate classification and resolution of one uploaded file."""
    kind: RecordKind
    total_records: int
    new_records: List[Dict[str, Any]] = Field(default_factory=list)
    duplicates: DuplicateBuckets = Field(default_factory=DuplicateBuckets)
    stats: BatchStats = Field(default_factory=BatchStats)
    errors: List[RowError] = Field(default_factory=list)

    @property
    def duplicate_count(self) -> int:
        return self.duplicates.total()

    @property
    def classified_count(self) -> int:
        """Rows that made it through detection without a row-level error."""
        return self.total_records - len(self.errors)


# --- Upload queue -----------------------------------------------------------

class QueueEntry(BaseModel):
    """One uploaded file tracked through the pipeline lifecycle."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    filename: str
    content: bytes = Field(default=b"", exclude=True, repr=False)
    kind: Optional[RecordKind] = None
    config: DuplicateDetectionConfig = Field(default_factory=DuplicateDetectionConfig)
    status: UploadStatus = UploadStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    result: Optional[ProcessedBatchResult] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    @property
    def is_terminal(self) -> bool:
        return self.status in (UploadStatus.COMPLETED, UploadStatus.ERROR)

    def transition(self, status: UploadStatus, progress: int) -> None:
        self.status = status
        self.progress = progress
        self.updated_at = utc_now_iso()


class UploadAuditEntry(BaseModel):
    """A row of the upload-history audit trail."""
    filename: str
    file_type: RecordKind
    total_records: int
    successful_records: int
    failed_records: int
    file_size_bytes: int
    upload_status: str
    stats: BatchStats
    created_at: str = Field(default_factory=utc_now_iso)

    @classmethod
    def for_entry(cls, entry: QueueEntry, result: ProcessedBatchResult, upload_status: str) -> "UploadAuditEntry":
        return cls(
            filename=entry.filename,
            file_type=result.kind,
            total_records=result.total_records,
            successful_records=len(result.new_records),
            failed_records=len(result.errors),
            file_size_bytes=entry.size_bytes,
            upload_status=upload_status,
            stats=result.stats,
        )
