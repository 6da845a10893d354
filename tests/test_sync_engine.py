import threading
from datetime import datetime, timedelta, timezone

import pytest

from mirrorsync.engine.sync import SyncEngine, decide_action, extract_objects, get_next_link
from mirrorsync.exceptions import ConnectorError, ContractConflictError, NotFoundError, RateLimitedError
from mirrorsync.models.config import DeletePolicy, ServiceConnection
from mirrorsync.models.sync import LogLevel, SyncAction, SynchronizationContract

from conftest import FakeSource, FakeTarget


def _page(*objects, next_link=None):
    body = {"results": list(objects)}
    if next_link:
        body["next"] = next_link
    return body


def _two_objects():
    return _page({"id": 1, "name": "Ada"}, {"id": 2, "name": "Grace"})


# Helpers


def test_extract_objects_uses_results_position():
    body = {"data": {"items": [{"id": 1}]}}
    assert extract_objects(body, "data.items") == [{"id": 1}]


def test_extract_objects_missing_position_gives_empty_page():
    assert extract_objects({"other": []}, "data.items") == []


def test_extract_objects_probes_common_keys():
    assert extract_objects({"items": [{"id": 1}]}) == [{"id": 1}]
    assert extract_objects({"data": [{"id": 2}]}) == [{"id": 2}]
    assert extract_objects([{"id": 3}]) == [{"id": 3}]


def test_extract_objects_dictionary_of_objects_yields_values():
    assert extract_objects({"results": {"a": {"id": 1}, "b": {"id": 2}}}) == [{"id": 1}, {"id": 2}]


def test_extract_objects_bare_object_is_single_object_page():
    assert extract_objects({"id": 7}) == [{"id": 7}]


def test_get_next_link_variants():
    assert get_next_link({"next": "https://api/p2"}) == "https://api/p2"
    assert get_next_link({"_links": {"next": {"href": "/p3"}}}) == "/p3"
    assert get_next_link({"links": {"next": "/p4"}}) == "/p4"
    assert get_next_link({"paging": {"after": "abc"}}, "paging.after") == "abc"
    assert get_next_link({"next": None}) is None
    assert get_next_link({"next": ""}) is None
    assert get_next_link([1, 2]) is None


def test_decide_action():
    contract = SynchronizationContract(synchronization_id="s", origin_id="1", origin_hash="h", target_id="t-1")
    assert decide_action(None, "h") == SyncAction.CREATE
    assert decide_action(contract, "h") == SyncAction.SKIP
    assert decide_action(contract, "other") == SyncAction.UPDATE
    assert decide_action(contract, "h", force=True) == SyncAction.UPDATE

    contract.target_last_action = SyncAction.DELETE
    assert decide_action(contract, "h") == SyncAction.UPDATE
    contract.target_id = None
    assert decide_action(contract, "h") == SyncAction.CREATE


# Runs


def test_unknown_synchronization_raises_not_found(engine):
    with pytest.raises(NotFoundError):
        engine.run("missing")


def test_first_run_creates_every_object(engine, store, source, target, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}

    result = engine.run("sync-1")

    assert result.level == LogLevel.INFO
    assert result.counts.found == 2
    assert result.counts.created == 2
    assert len(target.objects) == 2
    contract = store.get_contract("sync-1", "1")
    assert contract.target_id == "t-1"
    assert contract.target_last_action == SyncAction.CREATE
    assert contract.origin_hash is not None
    assert contract.target_hash is not None


def test_second_run_without_changes_writes_nothing(engine, store, source, target, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}

    engine.run("sync-1")
    writes_after_first_run = len(target.writes)
    result = engine.run("sync-1")

    assert result.counts.skipped == 2
    assert result.counts.created == 0
    assert len(target.writes) == writes_after_first_run
    assert store.get_contract("sync-1", "1").target_last_action == SyncAction.SKIP


def test_changed_object_is_updated_with_its_target_id(engine, source, target, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}
    engine.run("sync-1")

    source.pages = {None: _page({"id": 1, "name": "Ada Lovelace"}, {"id": 2, "name": "Grace"})}
    result = engine.run("sync-1")

    assert result.counts.updated == 1
    assert result.counts.skipped == 1
    action, payload, existing_target_id = target.writes[-1]
    assert action == SyncAction.UPDATE
    assert existing_target_id == "t-1"
    assert target.objects["t-1"]["name"] == "Ada Lovelace"


def test_pages_are_followed_in_order(engine, source, make_synchronization):
    make_synchronization()
    source.pages = {
        None: _page({"id": 1}, next_link="page-2"),
        "page-2": _page({"id": 2}, next_link="page-3"),
        "page-3": _page({"id": 3}),
    }

    result = engine.run("sync-1")

    assert source.calls == [None, "page-2", "page-3"]
    assert result.counts.created == 3


def test_repeated_next_link_stops_pagination(engine, source, make_synchronization):
    make_synchronization()
    source.pages = {None: _page({"id": 1}, next_link="loop"), "loop": _page({"id": 2}, next_link="loop")}

    result = engine.run("sync-1")

    assert source.calls == [None, "loop"]
    assert result.level == LogLevel.INFO


def test_rate_limit_on_second_page_keeps_first_page_contracts(engine, store, source, make_synchronization):
    make_synchronization(follow_ups=["sync-2"])
    reset_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
    source.pages = {
        None: _page({"id": 1}, {"id": 2}, next_link="page-2"),
        "page-2": RateLimitedError("Too many requests", reset_at=reset_at),
    }

    result = engine.run("sync-1")

    assert result.level == LogLevel.WARNING
    assert result.reschedule_at == reset_at
    assert result.counts.created == 2
    assert store.get_contract("sync-1", "1") is not None
    assert store.get_contract("sync-1", "2") is not None
    assert result.follow_ups == {}


def test_rate_limit_without_reset_time_backs_off(engine, source, make_synchronization, monkeypatch):
    monkeypatch.setenv("MIRRORSYNC_RATE_LIMIT_BACKOFF_SECONDS", "120")
    make_synchronization()
    source.pages = {None: RateLimitedError("Too many requests")}

    before = datetime.now(timezone.utc)
    result = engine.run("sync-1")
    after = datetime.now(timezone.utc)

    assert result.level == LogLevel.WARNING
    assert before + timedelta(seconds=120) <= result.reschedule_at <= after + timedelta(seconds=120)


def test_fetch_failure_ends_run_with_error(engine, store, source, make_synchronization):
    make_synchronization()
    source.pages = {None: ConnectorError("HTTP 500: oops", status_code=500)}

    result = engine.run("sync-1")

    assert result.level == LogLevel.ERROR
    assert "Failed to synchronize" in result.message
    log = store.get_log(result.log_id)
    assert log.level == LogLevel.ERROR
    assert log.completed_at is not None


def test_failing_object_does_not_stop_the_run(store, source, make_synchronization):
    target = FakeTarget(fail_on=lambda payload: payload.get("name") == "bad")
    engine = SyncEngine(store, connectors={"fake-source": source, "fake-target": target})
    make_synchronization()
    source.pages = {None: _page({"id": 1, "name": "good"}, {"id": 2, "name": "bad"}, {"id": 3, "name": "fine"})}

    result = engine.run("sync-1")

    assert result.level == LogLevel.WARNING
    assert result.counts.created == 2
    assert result.counts.errored == 1
    assert store.get_contract("sync-1", "2") is None
    errors = [entry for entry in store.list_contract_logs(log_id=result.log_id) if entry.error]
    assert len(errors) == 1
    assert errors[0].origin_id == "2"


class _BrokenTarget(FakeTarget):
    """Raises a plain ValueError for one object, as a buggy client library would."""

    def _write(self, connection, action, payload, existing_target_id):
        if payload is not None and payload.get("name") == "bad":
            raise ValueError("unexpected response shape")
        return super()._write(connection, action, payload, existing_target_id)


def test_unexpected_object_error_does_not_stop_the_run(store, source, make_synchronization):
    target = _BrokenTarget()
    engine = SyncEngine(store, connectors={"fake-source": source, "fake-target": target})
    make_synchronization()
    source.pages = {None: _page({"id": 1, "name": "bad"}, {"id": 2, "name": "good"})}

    result = engine.run("sync-1")

    assert result.level == LogLevel.WARNING
    assert result.counts.created == 1
    assert result.counts.errored == 1
    assert store.get_contract("sync-1", "2") is not None
    errors = [entry for entry in store.list_contract_logs(log_id=result.log_id) if entry.error]
    assert [entry.origin_id for entry in errors] == ["1"]
    assert "ValueError" in errors[0].message


def test_unformattable_amount_only_fails_its_object(engine, source, target, make_synchronization, make_mapping):
    make_mapping("to-target", mapping={"price": "price"}, cast={"price": ["intToMoneyString"]})
    make_synchronization(source_target_mapping="to-target")
    source.pages = {None: _page({"id": 1, "price": "1e999"}, {"id": 2, "price": "100"})}

    result = engine.run("sync-1")

    assert result.level == LogLevel.WARNING
    assert result.counts.created == 1
    assert result.counts.errored == 1
    assert list(target.objects.values()) == [{"price": "1,00"}]


def test_object_without_identifier_is_counted_as_error(engine, source, make_synchronization):
    make_synchronization()
    source.pages = {None: _page({"name": "anonymous"}, {"id": 1})}

    result = engine.run("sync-1")

    assert result.counts.errored == 1
    assert result.counts.created == 1


def test_custom_id_position(engine, store, source, make_synchronization):
    make_synchronization(source=ServiceConnection(service_type="fake-source", id_position="meta.uuid"))
    source.pages = {None: _page({"meta": {"uuid": "abc"}})}

    engine.run("sync-1")

    assert store.get_contract("sync-1", "abc") is not None


def test_conditions_exclude_objects_without_contracts(engine, store, source, make_synchronization):
    make_synchronization(conditions={"==": [{"var": "type"}, "person"]})
    source.pages = {None: _page({"id": 1, "type": "person"}, {"id": 2, "type": "robot"})}

    result = engine.run("sync-1")

    assert result.counts.created == 1
    assert result.counts.excluded == 1
    assert store.get_contract("sync-1", "2") is None


def test_target_mapping_shapes_the_payload(engine, source, target, make_synchronization, make_mapping):
    make_mapping("to-target", mapping={"fullName": "name", "version": 2}, cast={"fullName": ["string"]})
    make_synchronization(source_target_mapping="to-target")
    source.pages = {None: _page({"id": 1, "name": "Ada", "internal": True})}

    engine.run("sync-1")

    assert target.objects["t-1"] == {"fullName": "Ada", "version": 2}


def test_hash_mapping_limits_what_counts_as_a_change(engine, source, make_synchronization, make_mapping):
    make_mapping("hash", mapping={"name": "name"})
    make_synchronization(source_hash_mapping="hash")
    source.pages = {None: _page({"id": 1, "name": "Ada", "seen_at": "monday"})}
    engine.run("sync-1")

    source.pages = {None: _page({"id": 1, "name": "Ada", "seen_at": "tuesday"})}
    result = engine.run("sync-1")

    assert result.counts.skipped == 1
    assert result.counts.updated == 0


def test_missing_mapping_ends_run_with_error(engine, source, make_synchronization):
    make_synchronization(source_target_mapping="does-not-exist")

    result = engine.run("sync-1")

    assert result.level == LogLevel.ERROR
    assert "does-not-exist" in result.message
    assert source.calls == []


def test_dangling_conflict_mapping_ends_run_with_error(engine, source, make_synchronization):
    make_synchronization(target_source_mapping="gone")

    result = engine.run("sync-1")

    assert result.level == LogLevel.ERROR
    assert "gone" in result.message
    assert source.calls == []


def test_test_mode_writes_nothing(engine, store, source, target, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}

    result = engine.run("sync-1", test=True)

    assert result.test is True
    assert result.counts.created == 2
    assert target.writes == []
    assert store.list_contracts("sync-1") == []
    entries = store.list_contract_logs(log_id=result.log_id)
    assert len(entries) == 2
    assert all(entry.test for entry in entries)
    assert store.get_synchronization("sync-1").last_run_at is None


def test_force_mode_updates_unchanged_objects(engine, source, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}
    engine.run("sync-1")

    result = engine.run("sync-1", force=True)

    assert result.counts.updated == 2
    assert result.counts.skipped == 0


def test_keep_policy_leaves_vanished_objects_alone(engine, store, source, target, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}
    engine.run("sync-1")

    source.pages = {None: _page({"id": 1, "name": "Ada"})}
    result = engine.run("sync-1")

    assert result.counts.deleted == 0
    assert store.get_contract("sync-1", "2") is not None
    assert len(target.objects) == 2


def test_delete_policy_removes_target_object_and_contract(engine, store, source, target, make_synchronization):
    make_synchronization(delete_policy=DeletePolicy.DELETE)
    source.pages = {None: _two_objects()}
    engine.run("sync-1")

    source.pages = {None: _page({"id": 1, "name": "Ada"})}
    result = engine.run("sync-1")

    assert result.counts.deleted == 1
    assert store.get_contract("sync-1", "2") is None
    assert "t-2" not in target.objects
    assert target.writes[-1] == (SyncAction.DELETE, None, "t-2")


def test_mark_policy_records_delete_once(engine, store, source, target, make_synchronization):
    make_synchronization(delete_policy=DeletePolicy.MARK)
    source.pages = {None: _two_objects()}
    engine.run("sync-1")

    source.pages = {None: _page({"id": 1, "name": "Ada"})}
    first = engine.run("sync-1")
    second = engine.run("sync-1")

    assert first.counts.deleted == 1
    assert second.counts.deleted == 0
    contract = store.get_contract("sync-1", "2")
    assert contract.target_last_action == SyncAction.DELETE
    assert "t-2" in target.objects


def test_marked_object_that_returns_is_updated(engine, store, source, target, make_synchronization):
    make_synchronization(delete_policy=DeletePolicy.MARK)
    source.pages = {None: _two_objects()}
    engine.run("sync-1")
    source.pages = {None: _page({"id": 1, "name": "Ada"})}
    engine.run("sync-1")

    source.pages = {None: _two_objects()}
    result = engine.run("sync-1")

    assert result.counts.updated == 1
    assert store.get_contract("sync-1", "2").target_last_action == SyncAction.UPDATE


def test_contract_conflict_is_an_object_error(engine, store, source, make_synchronization, monkeypatch):
    make_synchronization()
    source.pages = {None: _page({"id": 1})}

    def conflict(contract, expected_hash):
        raise ContractConflictError("changed by another run")

    monkeypatch.setattr(store, "upsert_contract", conflict)
    result = engine.run("sync-1")

    assert result.counts.errored == 1
    assert result.level == LogLevel.WARNING


def test_cancelled_before_start_fetches_nothing(engine, source, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}
    cancel_event = threading.Event()
    cancel_event.set()

    result = engine.run("sync-1", cancel_event=cancel_event)

    assert result.level == LogLevel.WARNING
    assert "cancelled" in result.message
    assert source.calls == []


def test_cancel_between_objects_keeps_committed_contracts(store, source, make_synchronization):
    cancel_event = threading.Event()

    class CancellingTarget(FakeTarget):
        def _write(self, connection, action, payload, existing_target_id):
            written = super()._write(connection, action, payload, existing_target_id)
            cancel_event.set()
            return written

    engine = SyncEngine(store, connectors={"fake-source": source, "fake-target": CancellingTarget()})
    make_synchronization(delete_policy=DeletePolicy.DELETE)
    source.pages = {None: _page({"id": 1}, {"id": 2}, {"id": 3})}

    result = engine.run("sync-1", cancel_event=cancel_event)

    assert result.level == LogLevel.WARNING
    assert result.counts.created == 1
    assert store.get_contract("sync-1", "1") is not None
    assert store.get_contract("sync-1", "2") is None


def test_inactive_synchronization_does_not_run(engine, source, make_synchronization):
    make_synchronization(active=False)

    result = engine.run("sync-1")

    assert result.level == LogLevel.WARNING
    assert source.calls == []


def test_run_log_is_finalized(engine, store, source, make_synchronization):
    make_synchronization()
    source.pages = {None: _two_objects()}

    result = engine.run("sync-1")

    logs = store.list_logs("sync-1")
    assert len(logs) == 1
    assert logs[0].id == result.log_id
    assert logs[0].counts.created == 2
    assert logs[0].expires > logs[0].completed_at
    assert store.get_synchronization("sync-1").last_run_at == logs[0].completed_at


def test_follow_ups_run_after_success_and_cycles_are_broken(store, target, make_synchronization):
    source_a = FakeSource({None: _page({"id": 1})})
    source_b = FakeSource({None: _page({"id": 2})})
    engine = SyncEngine(store, connectors={"source-a": source_a, "source-b": source_b, "fake-target": target})
    make_synchronization("a", source=ServiceConnection(service_type="source-a"), follow_ups=["b"])
    make_synchronization("b", source=ServiceConnection(service_type="source-b"), follow_ups=["a", "missing"])

    result = engine.run("a")

    assert result.follow_ups["b"] == LogLevel.INFO
    assert len(source_a.calls) == 1
    assert len(source_b.calls) == 1
    assert store.get_contract("b", "2") is not None


def test_action_hooks_run_before_and_after(store, source, target, make_synchronization):
    calls = []

    def notify(stage, synchronization, result):
        calls.append((stage, synchronization.id, result.level if result else None))

    def broken(stage, synchronization, result):
        raise RuntimeError("hook failed")

    engine = SyncEngine(
        store,
        connectors={"fake-source": source, "fake-target": target},
        hooks={"notify": notify, "broken": broken}
    )
    make_synchronization(actions=["broken", "notify", "unregistered"])

    result = engine.run("sync-1")

    assert calls == [("before", "sync-1", None), ("after", "sync-1", LogLevel.INFO)]
    assert result.level == LogLevel.INFO
