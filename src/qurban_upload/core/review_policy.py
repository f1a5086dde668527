"""
Review Policy
-------------
Decides whether a classified file has to wait for a human before it is persisted.
"""

from pydantic import BaseModel, ConfigDict, field_validator

from qurban_upload.models.data_models import (
    DuplicateAction,
    DuplicateDetectionConfig,
    ProcessedBatchResult,
)


class ReviewPolicy(BaseModel):
    """
    When to interrupt the operator.

    A file is sent to review when its policy defers duplicates to a human and at
    least one duplicate was found, unless the file is overwhelmingly new: more than
    new_ratio_threshold of its classified rows are new. That keeps a single stray
    duplicate in an otherwise clean 500-row file from blocking the queue.

    Files that skip review while still holding prompted rows have those rows
    resolved with auto_resolve_action.
    """
    model_config = ConfigDict(frozen=True)

    new_ratio_threshold: float = 0.8
    auto_resolve_action: DuplicateAction = DuplicateAction.SKIP

    @field_validator("new_ratio_threshold")
    @classmethod
    def threshold_in_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"new_ratio_threshold must be between 0 and 1, got {v}")
        return v

    @field_validator("auto_resolve_action")
    @classmethod
    def auto_resolve_is_final(cls, v: DuplicateAction) -> DuplicateAction:
        if v == DuplicateAction.PROMPT:
            raise ValueError("auto_resolve_action cannot be 'prompt'")
        return v

    def requires_review(self, result: ProcessedBatchResult, config: DuplicateDetectionConfig) -> bool:
        if config.is_final or not result.duplicates.awaiting_review():
            return False

        new_count = result.stats.new_added
        if new_count == 0:
            return True
        return new_count / result.classified_count <= self.new_ratio_threshold
