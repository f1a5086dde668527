"""
Qurban Upload
Bulk-upload deduplication and reconciliation for qurban donor and distribution records.
"""

__version__ = "1.0.0"
