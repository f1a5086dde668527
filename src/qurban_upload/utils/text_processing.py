"""
Text Processing Utilities
------------------------
This module contains functions for normalizing the text fields of donor and
distribution records before they are compared. Every equality rule and every
similarity score in the duplicate detectors works on normalized text.
"""

import math
import re
from typing import Any, List

WHITESPACE_RE = re.compile(r"\s+")
NON_DIGIT_RE = re.compile(r"\D")

# Tokens of this length or shorter carry no place-name signal ("rt", "no", "jl")
MIN_KEYWORD_LENGTH = 2


def is_blank(value: Any) -> bool:
    """Return True for values that count as "no data": None, NaN and empty strings."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value == ""


def normalize(text: Any) -> str:
    """
    Normalize a value for comparison.

    This function:
    1. Converts the value to a string (None becomes "")
    2. Converts to lowercase
    3. Trims leading and trailing whitespace
    4. Collapses internal runs of whitespace to a single space

    Args:
        text: The value to normalize (can be any type, will be converted to str)

    Returns:
        str: The normalized text
    """
    if is_blank(text):
        return ""

    text = str(text).lower().strip()
    return WHITESPACE_RE.sub(" ", text)


def normalize_phone(phone: Any) -> str:
    """Strip every non-digit character from a phone number."""
    if is_blank(phone):
        return ""
    return NON_DIGIT_RE.sub("", str(phone))


def extract_keywords(text: str) -> List[str]:
    """
    Split normalized text into keywords.

    Only tokens longer than two characters are kept. Duplicated tokens are kept
    too, so a repeated place name counts once per occurrence.

    Args:
        text: Normalized text (see normalize)

    Returns:
        List[str]: Keywords in their original order
    """
    return [word for word in text.split(" ") if len(word) > MIN_KEYWORD_LENGTH]
