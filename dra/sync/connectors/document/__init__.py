"""
Document store connectors.
"""
