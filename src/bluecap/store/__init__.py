"""
Storage module for Bluecap.

This module provides JSON record persistence for capsules, the trust set
and the administrator defaults. There is no database: each record is one
small JSON file, replaced atomically on every write.

Design principles:
    - Atomic: Every write goes to a temp file renamed over the target
    - Validated: Records are parsed through Pydantic models on read
    - Lock-free: Concurrent writers race and the last rename wins
"""

from bluecap.store.files import RecordStore, generate_id, merge_set

__all__ = [
    "RecordStore",
    "generate_id",
    "merge_set",
]
