"""
DRA Sync Engine.

Syncs external data sources into a unified store and compiles data model
definitions into parameterized queries.
"""

__version__ = "0.1.0"
