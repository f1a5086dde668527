"""
File Parsing Utilities
---------------------
This module turns an uploaded CSV or Excel file into a list of string-keyed rows
and works out which kind of record the file holds from its column headers.
"""

import io
import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from qurban_upload.models.data_models import RecordKind

logger = logging.getLogger(__name__)

# Columns that identify each record kind; the first kind whose columns are all
# present wins
KIND_SIGNATURES = {
    RecordKind.MUZAKKI: ("nama_muzakki",),
    RecordKind.DISTRIBUSI: ("tanggal_distribusi", "alamat_penerima"),
}


def _read_frame(filename: str, content: bytes) -> pd.DataFrame:
    file_obj = io.BytesIO(content)
    file_extension = os.path.splitext(filename)[1].lower()

    if file_extension == ".csv":
        return pd.read_csv(file_obj, dtype=str, keep_default_na=False)
    if file_extension in [".xls", ".xlsx"]:
        return pd.read_excel(file_obj, dtype=str)

    # If we can't determine from extension, try CSV first, then Excel
    try:
        return pd.read_csv(file_obj, dtype=str, keep_default_na=False)
    except Exception:
        file_obj.seek(0)
        return pd.read_excel(file_obj, dtype=str)


@dataclass
class ParsedUpload:
    """Header and data rows of an uploaded spreadsheet."""
    columns: List[str]
    rows: List[Dict[str, Any]]


def read_upload(filename: str, content: bytes) -> ParsedUpload:
    """
    Parse an uploaded spreadsheet into its header and rows.

    The header row defines the field names. Every cell is read as text so that
    phone numbers and ids keep their leading zeros; empty Excel cells become None
    and empty CSV cells stay as empty strings. The header is returned even when
    the file has no data rows.

    Args:
        filename: Original file name, used to pick the reader
        content: Raw file bytes

    Returns:
        ParsedUpload: Column names and one dict per data row, in file order

    Raises:
        ValueError: If the file cannot be read as CSV or Excel
    """
    try:
        df = _read_frame(filename, content)
    except Exception as e:
        raise ValueError(f"Error reading file {filename}: {str(e)}") from e

    # Convert all column names to strings if they aren't already
    df.columns = df.columns.astype(str).str.strip()
    df = df.astype(object).where(pd.notna(df), None)

    logger.info(f"Loaded {len(df)} records from {filename}")
    return ParsedUpload(columns=list(df.columns), rows=df.to_dict(orient="records"))


def parse_upload(filename: str, content: bytes) -> List[Dict[str, Any]]:
    """Parse an uploaded spreadsheet into its data rows. See read_upload."""
    return read_upload(filename, content).rows


def detect_record_kind(columns: Iterable[str]) -> Optional[RecordKind]:
    """
    Detect the record kind from a set of column names.

    Args:
        columns: Column names of the parsed file

    Returns:
        Optional[RecordKind]: The detected kind, or None if no signature matches
    """
    present = {str(column).strip().lower() for column in columns}
    for kind, signature in KIND_SIGNATURES.items():
        if all(column in present for column in signature):
            return kind
    return None
