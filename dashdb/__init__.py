"""
dashdb - versioned SQLite migrations for the dashboard store.
"""

__version__ = "1.0.0"
