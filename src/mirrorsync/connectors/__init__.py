"""
Connector framework for MirrorSync.

This package contains the connectors that can be used as sources or targets
for synchronization runs.
"""

from typing import Type

from .base import BaseConnector, ConnectorCapability, FetchResult, WriteResult
from .rest import RestConnector

__all__ = [
    "BaseConnector",
    "ConnectorCapability",
    "FetchResult",
    "WriteResult",
    "RestConnector",
]

# Connector registry for dynamic loading
CONNECTOR_REGISTRY = {
    "rest": RestConnector,
}


def get_connector(service_type: str) -> Type[BaseConnector]:
    """Get a connector class by service type."""
    if service_type not in CONNECTOR_REGISTRY:
        raise ValueError(f"Unknown service type: {service_type}")
    return CONNECTOR_REGISTRY[service_type]
