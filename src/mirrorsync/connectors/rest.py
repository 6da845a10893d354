"""
REST connector reading and writing JSON resources over HTTP.
"""

import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import BaseConnector, ConnectorCapability, FetchResult, WriteResult
from ..core.config import get_http_timeout
from ..utils import dot
from ..version import get_user_agent
from ..exceptions import ConnectorError, RateLimitedError
from ..models.config import ServiceConnection
from ..models.sync import SyncAction

logger = logging.getLogger(__name__)

# Anything above this is an epoch timestamp, anything below a delay in seconds
_EPOCH_THRESHOLD = 10 ** 9


def parse_reset_header(headers: Dict[str, str]) -> Optional[datetime]:
    """
    Read the moment a throttled client may retry.

    Understands ``X-RateLimit-Reset`` (epoch seconds, a delay in seconds or an ISO
    timestamp) and ``Retry-After`` (a delay in seconds or an HTTP date).
    """
    normalized = {key.lower(): value for key, value in headers.items()}
    now = datetime.now(timezone.utc)

    reset = normalized.get("x-ratelimit-reset")
    if reset:
        try:
            number = float(reset)
            if number > _EPOCH_THRESHOLD:
                return datetime.fromtimestamp(number, tz=timezone.utc)
            return now + timedelta(seconds=number)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(reset.replace("Z", "+00:00"))
                return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning(f"Unreadable X-RateLimit-Reset header: {reset}")

    retry_after = normalized.get("retry-after")
    if retry_after:
        try:
            return now + timedelta(seconds=float(retry_after))
        except ValueError:
            try:
                return parsedate_to_datetime(retry_after)
            except (TypeError, ValueError):
                logger.warning(f"Unreadable Retry-After header: {retry_after}")

    return None


class RestConnector(BaseConnector):
    """
    Generic JSON-over-HTTP connector usable as source and as target.

    Creates ``POST`` to the collection endpoint, updates ``PUT`` (or the
    ``update_method`` extra) and deletes ``DELETE`` to ``endpoint/{target_id}``.
    """

    def __init__(self, session: Optional[requests.Session] = None, **kwargs):
        super().__init__(**kwargs)

        if session is None:
            # Configure session with retries; 429 is surfaced, never retried here
            session = requests.Session()
            retry_strategy = Retry(
                total=3,
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["GET"],
                backoff_factor=1
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(can_fetch=True, can_write=True, can_delete=True)

    def test_connection(self, connection: ServiceConnection) -> bool:
        """Test connection to the configured collection endpoint."""
        try:
            self._request(connection, "GET", self._collection_url(connection))
            return True
        except ConnectorError as e:
            logger.error(f"REST connection test failed: {e}")
            return False

    def _fetch(self, connection: ServiceConnection, cursor: Optional[str]) -> FetchResult:
        params = dict(connection.params)
        if cursor is None:
            url = self._collection_url(connection)
        elif cursor.startswith(("http://", "https://")):
            # Next links carry their own query string
            url, params = cursor, {}
        elif cursor.startswith("/"):
            url, params = f"{(connection.base_url or '').rstrip('/')}{cursor}", {}
        else:
            url = self._collection_url(connection)
            params[(connection.model_extra or {}).get("cursor_param", "cursor")] = cursor

        response = self._request(connection, "GET", url, params=params)
        return FetchResult(body=self._json(response), headers=dict(response.headers))

    def _write(
        self,
        connection: ServiceConnection,
        action: SyncAction,
        payload: Any,
        existing_target_id: Optional[str]
    ) -> WriteResult:
        extra = connection.model_extra or {}

        if action == SyncAction.CREATE:
            response = self._request(connection, extra.get("create_method", "POST"), self._collection_url(connection), json=payload)
        elif action == SyncAction.UPDATE:
            if existing_target_id is None:
                raise ConnectorError("Cannot update a target object without its identifier")
            response = self._request(connection, extra.get("update_method", "PUT"), self._object_url(connection, existing_target_id), json=payload)
        elif action == SyncAction.DELETE:
            if existing_target_id is None:
                raise ConnectorError("Cannot delete a target object without its identifier")
            self._request(connection, "DELETE", self._object_url(connection, existing_target_id))
            return WriteResult(target_id=existing_target_id, stored=None)
        else:
            raise ConnectorError(f"Unsupported write action: {action}")

        body = self._json(response) if response.content else None
        stored = body if isinstance(body, (dict, list)) else payload
        target_id = dot.get(body, connection.id_position) if isinstance(body, dict) else dot.MISSING
        if target_id is dot.MISSING or target_id is None:
            target_id = existing_target_id
        return WriteResult(target_id=str(target_id) if target_id is not None else None, stored=stored)

    def _collection_url(self, connection: ServiceConnection) -> str:
        base = (connection.base_url or "").rstrip("/")
        endpoint = connection.endpoint.strip("/")
        return f"{base}/{endpoint}" if endpoint else base

    def _object_url(self, connection: ServiceConnection, target_id: str) -> str:
        return f"{self._collection_url(connection)}/{target_id}"

    def _headers(self, connection: ServiceConnection) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": get_user_agent(), **connection.headers}
        credentials = connection.credentials
        if "bearer_token" in credentials:
            headers["Authorization"] = f"Bearer {credentials['bearer_token']}"
        if "api_key" in credentials:
            headers[credentials.get("api_key_header", "X-API-Key")] = credentials["api_key"]
        return headers

    def _request(self, connection: ServiceConnection, method: str, url: str, **kwargs) -> requests.Response:
        """Make a request and translate transport failures into connector errors.

        Raises:
            RateLimitedError: On HTTP 429
            ConnectorError: On any other failure
        """
        credentials = connection.credentials
        auth = None
        if "username" in credentials:
            auth = (credentials["username"], credentials.get("password", ""))
        timeout = connection.timeout if connection.timeout is not None else get_http_timeout()

        try:
            logger.debug(f"Making {method} request to {url}")
            response = self.session.request(
                method, url, headers=self._headers(connection), auth=auth, timeout=timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Request to {url} failed: {e}")
            raise ConnectorError(f"Request failed: {e}")

        if response.status_code == 429:
            reset_at = parse_reset_header(dict(response.headers))
            logger.warning(f"Rate limited by {url}, reset at {reset_at}")
            raise RateLimitedError(f"Rate limited by {url}", reset_at=reset_at)

        if response.status_code >= 400:
            raise ConnectorError(f"HTTP {response.status_code}: {response.text[:500]}", status_code=response.status_code)

        return response

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise ConnectorError(f"Response from {response.url} is not valid JSON")
