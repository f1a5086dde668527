"""
Core Module
Contains the duplicate detectors, the batch processor and the upload queue coordinator.
"""

from .detectors import DonorDuplicateDetector, DistributionDuplicateDetector, get_detector
from .batch_processor import BatchProcessor, merge_records
from .review_policy import ReviewPolicy
from .upload_queue import UploadQueueCoordinator
