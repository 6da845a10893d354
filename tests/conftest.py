from typing import Any, Callable, Dict, List, Optional

import pytest

from mirrorsync.connectors.base import BaseConnector, ConnectorCapability, FetchResult, WriteResult
from mirrorsync.engine.sync import SyncEngine
from mirrorsync.exceptions import ConnectorError
from mirrorsync.models.config import Synchronization, ServiceConnection
from mirrorsync.models.mapping import Mapping
from mirrorsync.models.sync import SyncAction
from mirrorsync.services.store import InMemoryStore


class FakeSource(BaseConnector):
    """Serves canned pages by cursor; an exception in place of a page is raised."""

    def __init__(self, pages: Optional[Dict[Optional[str], Any]] = None):
        super().__init__()
        self.pages: Dict[Optional[str], Any] = pages or {None: {"results": []}}
        self.calls: List[Optional[str]] = []

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(can_fetch=True)

    def _fetch(self, connection: ServiceConnection, cursor: Optional[str]) -> FetchResult:
        self.calls.append(cursor)
        page = self.pages[cursor]
        if isinstance(page, Exception):
            raise page
        return FetchResult(body=page)

    def _write(self, connection, action, payload, existing_target_id) -> WriteResult:
        raise NotImplementedError


class FakeTarget(BaseConnector):
    """Keeps written objects in a dictionary and hands out ids t-1, t-2, ..."""

    def __init__(self, fail_on: Optional[Callable[[Any], bool]] = None):
        super().__init__()
        self.objects: Dict[str, Any] = {}
        self.writes: List[tuple] = []
        self.fail_on = fail_on or (lambda payload: False)
        self._counter = 0

    def get_capabilities(self) -> ConnectorCapability:
        return ConnectorCapability(can_fetch=False, can_write=True, can_delete=True)

    def _fetch(self, connection, cursor) -> FetchResult:
        raise NotImplementedError

    def _write(self, connection, action, payload, existing_target_id) -> WriteResult:
        self.writes.append((action, payload, existing_target_id))
        if payload is not None and self.fail_on(payload):
            raise ConnectorError("Target refused the object", status_code=422)

        if action == SyncAction.CREATE:
            self._counter += 1
            target_id = f"t-{self._counter}"
            self.objects[target_id] = payload
            return WriteResult(target_id=target_id, stored=payload)
        if action == SyncAction.UPDATE:
            self.objects[existing_target_id] = payload
            return WriteResult(target_id=existing_target_id, stored=payload)
        self.objects.pop(existing_target_id, None)
        return WriteResult(target_id=existing_target_id, stored=None)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def target():
    return FakeTarget()


@pytest.fixture
def engine(store, source, target):
    return SyncEngine(store, connectors={"fake-source": source, "fake-target": target})


@pytest.fixture
def make_synchronization(store):
    """Save a synchronization reading from fake-source and writing to fake-target."""

    def _make(synchronization_id: str = "sync-1", **overrides) -> Synchronization:
        data = {
            "id": synchronization_id,
            "name": f"Synchronization {synchronization_id}",
            "source": ServiceConnection(service_type="fake-source"),
            "target": ServiceConnection(service_type="fake-target"),
        }
        data.update(overrides)
        synchronization = Synchronization(**data)
        store.save_synchronization(synchronization)
        return synchronization

    return _make


@pytest.fixture
def make_mapping(store):
    def _make(mapping_id: str, **fields) -> Mapping:
        mapping = Mapping(id=mapping_id, **fields)
        store.save_mapping(mapping)
        return mapping

    return _make
