"""
Models for the MirrorSync integration engine.
"""

from .config import Synchronization, ServiceConnection, DeletePolicy
from .mapping import Mapping, MappingExpr, ExactPath, Template, Constant, classify_expression
from .sync import (
    SyncAction, LogLevel, SyncCounts, SynchronizationContract,
    SynchronizationLog, SynchronizationContractLog, RunResult
)

__all__ = [
    # Configuration
    "Synchronization",
    "ServiceConnection",
    "DeletePolicy",

    # Mapping recipes
    "Mapping",
    "MappingExpr",
    "ExactPath",
    "Template",
    "Constant",
    "classify_expression",

    # Run state
    "SyncAction",
    "LogLevel",
    "SyncCounts",
    "SynchronizationContract",
    "SynchronizationLog",
    "SynchronizationContractLog",
    "RunResult",
]
