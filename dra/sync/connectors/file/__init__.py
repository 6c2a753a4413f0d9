"""
Uploaded file connectors.
"""
