"""
Marketing and CRM API connectors.
"""
