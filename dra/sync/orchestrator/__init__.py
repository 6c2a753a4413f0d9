"""
Sync orchestration.
"""

from dra.sync.orchestrator.sync_orchestrator import DATA_SOURCE_LEASE, SyncOrchestrator, SyncOutcome

__all__ = ["DATA_SOURCE_LEASE", "SyncOrchestrator", "SyncOutcome"]
