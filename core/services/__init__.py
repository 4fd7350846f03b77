"""
Core services for the application.

This package contains the main service implementations for the application,
including the bed registry, its refresh loop, authorization and activity logging.
"""

from .activity_log import ActivityLogger, ActivityStore, InMemoryActivityStore
from .authorization import AuthorizationGate, Operation
from .bed_registry import BedRegistry
from .refresher import RefreshConfig, RefreshReport, VitalsRefresher
from .result import Result
from .timeseries import VitalsSource

__all__ = [
    "ActivityLogger",
    "ActivityStore",
    "AuthorizationGate",
    "BedRegistry",
    "InMemoryActivityStore",
    "Operation",
    "RefreshConfig",
    "RefreshReport",
    "Result",
    "VitalsRefresher",
    "VitalsSource",
]
