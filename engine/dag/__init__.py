"""
DAG Module

Interval dependency graph construction and validation for rollups.
"""

from .builder import DAGBuilder, ROLLUP_SOURCES

__all__ = [
    "DAGBuilder",
    "ROLLUP_SOURCES",
]
