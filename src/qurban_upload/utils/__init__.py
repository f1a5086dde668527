"""
Utilities Module
Contains utility functions for text normalization, similarity scoring and file parsing.
"""

from .text_processing import normalize, normalize_phone, extract_keywords, is_blank
from .fuzzy_matching import similarity, address_similarity
from .file_parsing import ParsedUpload, read_upload, parse_upload, detect_record_kind
