"""
Source connectors.
"""

from dra.sync.connectors.base import (
    ActorContext,
    BaseConnector,
    BatchWriter,
    CancellationToken,
    ConnectorServices,
    SyncOptions,
    SyncProgress,
    SyncResult,
    TableSchema,
)
from dra.sync.connectors.registry import ConnectorRegistry, build_default_registry

__all__ = [
    "ActorContext",
    "BaseConnector",
    "BatchWriter",
    "CancellationToken",
    "ConnectorRegistry",
    "ConnectorServices",
    "SyncOptions",
    "SyncProgress",
    "SyncResult",
    "TableSchema",
    "build_default_registry",
]
