"""
Scheduler package for the sync and digest jobs.

This package contains:
- Charge reconciliation against the circulation system
- Daily note digest selection and formatting
- Webhook delivery dispatcher
- Scheduled job entry points and APScheduler wiring
"""

__version__ = "1.0.0"
