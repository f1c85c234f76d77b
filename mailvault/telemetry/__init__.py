"""Run statistics"""

from .stats import PeriodicFlusher, StatsWriter, SyncStats

__all__ = ["PeriodicFlusher", "StatsWriter", "SyncStats"]
