"""
Sync and refresh history stores.
"""

from dra.sync.history.refresh_history import RefreshHistoryStore
from dra.sync.history.sync_history import SyncHistoryStore, classify_outcome

__all__ = ["RefreshHistoryStore", "SyncHistoryStore", "classify_outcome"]
