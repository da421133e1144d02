"""
Jira Sync
Mirrors Jira projects and issues into a relational store.
"""

__version__ = '1.0.0'
