"""
Pipeline Exceptions
-------------------
Batch-level and state errors raised by the upload pipeline. Row-level problems
are never raised past the batch processor; they are collected on the result.
"""


class UploadPipelineError(Exception):
    """Base class for errors raised by the upload pipeline."""


class RecordKindError(UploadPipelineError):
    """The record kind of an uploaded file could not be determined."""


class PersistenceError(UploadPipelineError):
    """Reading the existing corpus or writing accepted rows failed."""


class EntryNotFoundError(UploadPipelineError):
    """No queue entry exists with the given id."""


class EntryStateError(UploadPipelineError):
    """The operation is not allowed in the entry's current state."""
