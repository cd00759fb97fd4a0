"""
Circulation package: access to the external library system and local store.

This package contains:
- Resilient fetch client with timeout/retry handling
- Session management for the circulation API
- Circulation API client (charges, charge histories)
- MongoDB repository for books, notes and planned loans
"""

__version__ = "1.0.0"
