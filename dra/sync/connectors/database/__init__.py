"""
Relational database connectors.
"""
