"""
Sync orchestration engine: connectors, unified store, history and scheduling.
"""
