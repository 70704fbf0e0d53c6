"""
Runtime Module

Live aggregation service wiring.
"""

from .coordinator import AggregationCoordinator

__all__ = [
    "AggregationCoordinator",
]
