"""
Fuzzy Matching Utilities
-----------------------
This module contains the similarity scorers used by the duplicate detectors.
Both scorers return a float between 0 and 1, where 1 means identical after
normalization.
"""

import jellyfish  # pip install jellyfish
from typing import Any

from qurban_upload.utils.text_processing import normalize, extract_keywords

# Weights for the blended address score
KEYWORD_WEIGHT = 0.6
CHARACTER_WEIGHT = 0.4


def _character_similarity(a: str, b: str) -> float:
    """Levenshtein similarity between two already-normalized strings."""
    if a == b:
        return 1.0

    max_length = max(len(a), len(b))
    if max_length == 0:
        return 1.0

    distance = jellyfish.levenshtein_distance(a, b)
    return 1 - (distance / max_length)


def similarity(a: Any, b: Any) -> float:
    """
    Calculate the normalized edit-distance similarity of two strings.

    Both values are normalized first (lowercase, trimmed, whitespace collapsed).
    Equal strings, including two empty strings, score exactly 1.0. Otherwise the
    score is 1 - levenshtein(a, b) / max(len(a), len(b)).

    Args:
        a: First string to compare
        b: Second string to compare

    Returns:
        float: Similarity between 0 and 1
    """
    return _character_similarity(normalize(a), normalize(b))


def address_similarity(a: Any, b: Any) -> float:
    """
    Calculate the similarity of two addresses.

    Blends two signals so that addresses sharing key place-name tokens score
    high even when punctuation or ordering differs:
    - Keyword overlap (60%): fraction of keywords in `a` (tokens longer than
      two characters) that also appear verbatim in `b`
    - Character similarity (40%): the same score as similarity()

    Args:
        a: Incoming address
        b: Existing address

    Returns:
        float: Similarity between 0 and 1
    """
    a_norm, b_norm = normalize(a), normalize(b)
    if a_norm == b_norm:
        return 1.0

    keywords_a = extract_keywords(a_norm)
    keywords_b = set(extract_keywords(b_norm))

    match_count = sum(1 for keyword in keywords_a if keyword in keywords_b)
    keyword_similarity = match_count / len(keywords_a) if keywords_a else 0.0

    char_similarity = _character_similarity(a_norm, b_norm)

    return (keyword_similarity * KEYWORD_WEIGHT) + (char_similarity * CHARACTER_WEIGHT)
