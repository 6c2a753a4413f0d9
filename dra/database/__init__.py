"""
Database connection management.
"""

from dra.database.connection import Base, DatabaseManager, INTERNAL_SCHEMAS

__all__ = ["Base", "DatabaseManager", "INTERNAL_SCHEMAS"]
