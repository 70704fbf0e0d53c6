"""
Config Module

YAML service configuration loading and validation.
"""

from .loader import (
    AggregationConfig,
    BackfillConfig,
    ConfigLoader,
    DatabaseConfig,
    IntegrityConfig,
    RetentionConfig,
    RollupConfig,
    ServiceConfig,
)

__all__ = [
    "AggregationConfig",
    "BackfillConfig",
    "ConfigLoader",
    "DatabaseConfig",
    "IntegrityConfig",
    "RetentionConfig",
    "RollupConfig",
    "ServiceConfig",
]
