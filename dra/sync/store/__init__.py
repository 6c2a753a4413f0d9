"""
Unified store and lease persistence.
"""

from dra.sync.store.leases import LeaseManager
from dra.sync.store.unified_store import UnifiedStore, normalize_rows, sanitize_identifier

__all__ = [
    "LeaseManager",
    "UnifiedStore",
    "normalize_rows",
    "sanitize_identifier",
]
