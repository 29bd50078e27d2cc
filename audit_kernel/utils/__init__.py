"""Utility modules for the audit kernel."""

from audit_kernel.utils.hashing import (
    canonicalize_json,
    compute_entry_checksum,
    hash_payload,
)

__all__ = [
    "canonicalize_json",
    "compute_entry_checksum",
    "hash_payload",
]
