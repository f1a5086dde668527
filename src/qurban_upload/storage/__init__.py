"""
Storage Module
Contains the RecordStore contract and its in-memory and Supabase implementations.
"""

from .base import RecordStore
from .memory import InMemoryRecordStore
from .supabase import SupabaseRecordStore
