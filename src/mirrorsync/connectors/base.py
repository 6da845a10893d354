"""
Base connector class for all source and target integrations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from pydantic import BaseModel
import logging

from ..models.config import ServiceConnection
from ..models.sync import SyncAction

logger = logging.getLogger(__name__)


class ConnectorCapability(BaseModel):
    """Defines what operations a connector supports."""
    can_fetch: bool = False
    can_write: bool = False
    can_delete: bool = False


@dataclass
class FetchResult:
    """One page as returned by a source."""
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class WriteResult:
    """Outcome of a create/update/delete on a target."""
    target_id: Optional[str]
    stored: Any = None


class BaseConnector(ABC):
    """Abstract base class for connectors.

    Connectors are stateless with respect to a synchronization: everything they
    need arrives with the ``ServiceConnection`` passed to each call.
    """

    def __init__(self, **kwargs):
        """
        Initialize the connector.

        Args:
            **kwargs: Connector-wide configuration parameters
        """
        self.config = kwargs
        logger.debug(f"Initialized {self.__class__.__name__} connector")

    @abstractmethod
    def get_capabilities(self) -> ConnectorCapability:
        """Return what operations this connector supports."""
        pass

    def test_connection(self, connection: ServiceConnection) -> bool:
        """Test if the connector can successfully reach the service."""
        return True

    def fetch(self, connection: ServiceConnection, cursor: Optional[str] = None) -> FetchResult:
        """
        Fetch one page of objects from a source.

        Args:
            connection: Source configuration
            cursor: Next-page link or token returned by the previous page, None for the first page

        Returns:
            The page body and response headers

        Raises:
            RateLimitedError: If the source is throttling requests
            ConnectorError: On any other transport failure
        """
        if not self.get_capabilities().can_fetch:
            raise NotImplementedError(f"{self.__class__.__name__} does not support fetching")
        return self._fetch(connection, cursor)

    def write(
        self,
        connection: ServiceConnection,
        action: SyncAction,
        payload: Any,
        existing_target_id: Optional[str] = None
    ) -> WriteResult:
        """
        Create, update or delete one object on a target.

        Args:
            connection: Target configuration
            action: create, update or delete
            payload: Mapped object to store, None for deletes
            existing_target_id: Target identifier known from the contract

        Returns:
            The target's identifier and the representation it stored
        """
        capabilities = self.get_capabilities()
        if action == SyncAction.DELETE and not capabilities.can_delete:
            raise NotImplementedError(f"{self.__class__.__name__} does not support deleting")
        if not capabilities.can_write:
            raise NotImplementedError(f"{self.__class__.__name__} does not support writing")
        return self._write(connection, action, payload, existing_target_id)

    @abstractmethod
    def _fetch(self, connection: ServiceConnection, cursor: Optional[str]) -> FetchResult:
        """Service-specific page fetching implementation."""
        pass

    @abstractmethod
    def _write(
        self,
        connection: ServiceConnection,
        action: SyncAction,
        payload: Any,
        existing_target_id: Optional[str]
    ) -> WriteResult:
        """Service-specific write implementation."""
        pass
