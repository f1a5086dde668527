"""
Duplicate Detectors
-------------------
This module classifies one incoming record against the existing corpus. There is
one detector per record kind. Each detector applies its rules in a fixed order of
decreasing evidence strength: the first rule that fires decides the match and no
later rule is evaluated.
"""

from typing import Callable, Optional, Sequence, Tuple, TypeVar

from qurban_upload.models.data_models import (
    DistributionRecord,
    DonorRecord,
    DuplicateAction,
    DuplicateDetectionConfig,
    MatchResult,
    MatchType,
    RecordKind,
    UploadRecord,
)
from qurban_upload.utils.fuzzy_matching import address_similarity, similarity
from qurban_upload.utils.text_processing import normalize, normalize_phone

R = TypeVar("R", bound=UploadRecord)


def best_match(
    incoming_value: str,
    candidates: Sequence[R],
    value_of: Callable[[R], str],
    scorer: Callable[[str, str], float],
    tolerance: float,
) -> Optional[Tuple[R, float]]:
    """
    Find the candidate whose value scores highest against the incoming value.

    Ties go to the earliest candidate. The best candidate is only returned when its
    score reaches the tolerance (a score exactly equal to the tolerance counts).

    Args:
        incoming_value: Value taken from the incoming record
        candidates: Existing records to score
        value_of: Extracts the compared value from an existing record
        scorer: Similarity function returning a float between 0 and 1
        tolerance: Minimum score for a match

    Returns:
        Optional[Tuple[R, float]]: The best record and its score, or None
    """
    best: Optional[Tuple[R, float]] = None
    for candidate in candidates:
        score = scorer(incoming_value, value_of(candidate))
        if best is None or score > best[1]:
            best = (candidate, score)

    if best is not None and best[1] >= tolerance:
        return best
    return None


class DonorDuplicateDetector:
    """
    Duplicate detection for muzakki (donor) records.

    Rules, in order:
    1. Name + animal type + donation value equal      -> exact, 1.0, skip
    2. Name + phone digits equal                      -> exact, 0.9, merge
    3. Name similarity >= tolerance (non-strict only) -> fuzzy, prompt
    """

    kind = RecordKind.MUZAKKI
    record_type = DonorRecord

    PRIMARY_FIELDS = ["nama_muzakki", "jenis_hewan", "nilai_qurban"]
    PHONE_FIELDS = ["nama_muzakki", "telepon"]
    FUZZY_FIELDS = ["nama_muzakki"]

    def detect(
        self,
        incoming: DonorRecord,
        existing_corpus: Sequence[DonorRecord],
        config: DuplicateDetectionConfig,
    ) -> MatchResult:
        exact = self._find_exact_match(incoming, existing_corpus)
        if exact is not None:
            return MatchResult(
                is_duplicate=True,
                match_type=MatchType.EXACT,
                matching_fields=list(self.PRIMARY_FIELDS),
                confidence=1.0,
                existing_record=exact.as_row(),
                suggested_action=DuplicateAction.SKIP,
            )

        phone_match = self._find_phone_match(incoming, existing_corpus)
        if phone_match is not None:
            return MatchResult(
                is_duplicate=True,
                match_type=MatchType.EXACT,
                matching_fields=list(self.PHONE_FIELDS),
                confidence=0.9,
                existing_record=phone_match.as_row(),
                suggested_action=DuplicateAction.MERGE,
            )

        if not config.strict_mode:
            fuzzy = best_match(
                incoming.nama_muzakki,
                existing_corpus,
                lambda existing: existing.nama_muzakki,
                similarity,
                config.tolerance,
            )
            if fuzzy is not None:
                record, confidence = fuzzy
                return MatchResult(
                    is_duplicate=True,
                    match_type=MatchType.FUZZY,
                    matching_fields=list(self.FUZZY_FIELDS),
                    confidence=confidence,
                    existing_record=record.as_row(),
                    suggested_action=DuplicateAction.PROMPT,
                )

        return MatchResult.no_match()

    def _find_exact_match(self, incoming: DonorRecord, corpus: Sequence[DonorRecord]) -> Optional[DonorRecord]:
        name = normalize(incoming.nama_muzakki)
        animal = normalize(incoming.jenis_hewan)
        for existing in corpus:
            if (
                normalize(existing.nama_muzakki) == name
                and normalize(existing.jenis_hewan) == animal
                and existing.nilai_qurban == incoming.nilai_qurban
            ):
                return existing
        return None

    def _find_phone_match(self, incoming: DonorRecord, corpus: Sequence[DonorRecord]) -> Optional[DonorRecord]:
        phone = normalize_phone(incoming.telepon)
        if not phone:
            return None

        name = normalize(incoming.nama_muzakki)
        for existing in corpus:
            if normalize(existing.nama_muzakki) == name and normalize_phone(existing.telepon) == phone:
                return existing
        return None


class DistributionDuplicateDetector:
    """
    Duplicate detection for distribusi (distribution) records.

    Rules, in order:
    1. Recipient name + address + date equal                  -> exact, 1.0, skip
    2. Address + date + animal type equal                     -> partial, 0.8, merge
    3. Same date, address similarity >= tolerance (non-strict) -> fuzzy, prompt
    """

    kind = RecordKind.DISTRIBUSI
    record_type = DistributionRecord

    PRIMARY_FIELDS = ["nama_penerima", "alamat_penerima", "tanggal_distribusi"]
    LOCATION_FIELDS = ["alamat_penerima", "tanggal_distribusi", "jenis_hewan"]
    FUZZY_FIELDS = ["alamat_penerima", "tanggal_distribusi"]

    def detect(
        self,
        incoming: DistributionRecord,
        existing_corpus: Sequence[DistributionRecord],
        config: DuplicateDetectionConfig,
    ) -> MatchResult:
        exact = self._find_exact_match(incoming, existing_corpus)
        if exact is not None:
            return MatchResult(
                is_duplicate=True,
                match_type=MatchType.EXACT,
                matching_fields=list(self.PRIMARY_FIELDS),
                confidence=1.0,
                existing_record=exact.as_row(),
                suggested_action=DuplicateAction.SKIP,
            )

        location_match = self._find_location_match(incoming, existing_corpus)
        if location_match is not None:
            return MatchResult(
                is_duplicate=True,
                match_type=MatchType.PARTIAL,
                matching_fields=list(self.LOCATION_FIELDS),
                confidence=0.8,
                existing_record=location_match.as_row(),
                suggested_action=DuplicateAction.MERGE,
            )

        if not config.strict_mode:
            same_day = [
                existing for existing in existing_corpus
                if existing.tanggal_distribusi == incoming.tanggal_distribusi
            ]
            fuzzy = best_match(
                incoming.alamat_penerima,
                same_day,
                lambda existing: existing.alamat_penerima,
                address_similarity,
                config.tolerance,
            )
            if fuzzy is not None:
                record, confidence = fuzzy
                return MatchResult(
                    is_duplicate=True,
                    match_type=MatchType.FUZZY,
                    matching_fields=list(self.FUZZY_FIELDS),
                    confidence=confidence,
                    existing_record=record.as_row(),
                    suggested_action=DuplicateAction.PROMPT,
                )

        return MatchResult.no_match()

    def _find_exact_match(
        self, incoming: DistributionRecord, corpus: Sequence[DistributionRecord]
    ) -> Optional[DistributionRecord]:
        name = normalize(incoming.nama_penerima)
        address = normalize(incoming.alamat_penerima)
        for existing in corpus:
            if (
                normalize(existing.nama_penerima) == name
                and normalize(existing.alamat_penerima) == address
                and existing.tanggal_distribusi == incoming.tanggal_distribusi
            ):
                return existing
        return None

    def _find_location_match(
        self, incoming: DistributionRecord, corpus: Sequence[DistributionRecord]
    ) -> Optional[DistributionRecord]:
        address = normalize(incoming.alamat_penerima)
        animal = normalize(incoming.jenis_hewan)
        for existing in corpus:
            if (
                normalize(existing.alamat_penerima) == address
                and existing.tanggal_distribusi == incoming.tanggal_distribusi
                and normalize(existing.jenis_hewan) == animal
            ):
                return existing
        return None


DETECTORS = {
    RecordKind.MUZAKKI: DonorDuplicateDetector,
    RecordKind.DISTRIBUSI: DistributionDuplicateDetector,
}


def get_detector(kind: RecordKind):
    """Return a detector instance for the given record kind."""
    return DETECTORS[RecordKind(kind)]()

