"""
Audit Kernel

An append-only mutation audit log with:
- Before/after snapshots with sensitive-field redaction
- Field-level diffs
- SHA-256 integrity checksums per entry
- ORM and database-level immutability enforcement
- Validated, keyset-paginated read access and anomaly heuristics
"""

__version__ = "0.1.0"
