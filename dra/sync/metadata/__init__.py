"""
Table Metadata Registry.
"""

from dra.sync.metadata.table_metadata import (
    TableMetadataRegistry,
    TableRegistration,
    generate_physical_table_name,
)

__all__ = [
    "TableMetadataRegistry",
    "TableRegistration",
    "generate_physical_table_name",
]
