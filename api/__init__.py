"""
HTTP surface for BookFlow Sync.

This module provides:
- Health check
- Manual triggers for the loan sync and the note digest
"""
