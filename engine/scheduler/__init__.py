"""
Scheduler Module

Periodic timers for rollup and retention jobs.
"""

from .executor import PeriodicExecutor

__all__ = [
    "PeriodicExecutor",
]
