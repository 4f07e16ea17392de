from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from reloader.src.watcher import ResourceWatcher


class RecordingHandler:
    def __init__(self) -> None:
        self.syncs: list[tuple[list[Any], bool]] = []
        self.events: list[tuple[str, Any]] = []

    def sync(self, items: list[Any], relist: bool) -> None:
        self.syncs.append((items, relist))

    def handle_event(self, event_type: str, obj: Any) -> None:
        self.events.append((event_type, obj))


def make_object(name: str, resource_version: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name, resource_version=resource_version))


def _fake_list(
    resource_versions: list[str] | None = None,
    item_sets: list[list[SimpleNamespace]] | None = None,
    calls: list[dict[str, Any]] | None = None,
) -> Any:
    versions = resource_versions or ["100"]
    items_by_call = item_sets or [[]]
    call_count = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal call_count
        if calls is not None:
            calls.append(kwargs)
        index = min(call_count, len(versions) - 1)
        items_index = min(call_count, len(items_by_call) - 1)
        call_count += 1
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=versions[index]),
            items=items_by_call[items_index],
        )

    return fake_list


def _make_watcher(
    list_fn: Any, handler: RecordingHandler | None = None, namespace: str | None = "default"
) -> ResourceWatcher:
    return ResourceWatcher(
        resource="configmaps",
        list_fn=list_fn,
        handler=handler or RecordingHandler(),
        namespace=namespace,
    )


def test_run_forever_syncs_then_forwards_events_and_tracks_resource_version() -> None:
    handler = RecordingHandler()
    initial = make_object("my-config", "100")
    watcher = _make_watcher(_fake_list(item_sets=[[initial]]), handler)

    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    seen_kwargs: list[dict[str, Any]] = []
    event_obj = make_object("my-config", "142")

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_kwargs.append(kwargs)
        if len(seen_kwargs) == 1:
            return iter([{"type": "MODIFIED", "object": event_obj}, {"type": "BOOKMARK"}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert handler.syncs == [([initial], False)]
    assert handler.events == [("MODIFIED", event_obj)]
    assert seen_kwargs[0]["resource_version"] == "100"
    assert seen_kwargs[0]["namespace"] == "default"
    assert seen_kwargs[1]["resource_version"] == "142"
    assert mock_watcher.stop.call_count >= 1
    assert not watcher.ready.is_set()


def test_cluster_wide_scope_omits_namespace_argument() -> None:
    calls: list[dict[str, Any]] = []
    watcher = _make_watcher(_fake_list(calls=calls), namespace=None)
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        assert "namespace" not in kwargs
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert calls == [{}]
    assert watcher.scope == "<all namespaces>"


def test_ready_is_set_after_initial_list() -> None:
    watcher = _make_watcher(_fake_list())
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()
    ready_during_stream: list[bool] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        ready_during_stream.append(watcher.ready.is_set())
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert ready_during_stream == [True]


def test_run_forever_relists_on_410() -> None:
    handler = RecordingHandler()
    initial = make_object("my-config", "100")
    relisted = make_object("my-config", "200")
    watcher = _make_watcher(
        _fake_list(resource_versions=["100", "200"], item_sets=[[initial], [relisted]]),
        handler,
    )

    resource_versions_seen: list[Any] = []
    shutdown_event = threading.Event()
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        resource_versions_seen.append(kwargs.get("resource_version"))
        if len(resource_versions_seen) == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert resource_versions_seen == ["100", "200"]
    assert handler.syncs == [([initial], False), ([relisted], True)]


def test_failed_relist_is_retried_before_watch_resumes() -> None:
    handler = RecordingHandler()
    initial = make_object("my-config", "100")
    relisted = make_object("my-config", "300")
    list_attempts = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal list_attempts
        list_attempts += 1
        if list_attempts == 1:
            return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[initial])
        if list_attempts == 2:
            raise ApiException(status=500, reason="apiserver unavailable")
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="300"), items=[relisted])

    watcher = _make_watcher(fake_list, handler)
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    resource_versions_seen: list[Any] = []
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        resource_versions_seen.append(kwargs.get("resource_version"))
        if len(resource_versions_seen) == 1:
            raise ApiException(status=410, reason="Gone")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.watcher.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert list_attempts == 3
    assert handler.syncs == [([initial], False), ([relisted], True)]
    assert resource_versions_seen == ["100", "300"]
    assert wait_values == [pytest.approx(1.0)]


def test_relist_rbac_denied_stops_watcher() -> None:
    list_attempts = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal list_attempts
        list_attempts += 1
        if list_attempts == 1:
            return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[])
        raise ApiException(status=403, reason="forbidden")

    handler = RecordingHandler()
    watcher = _make_watcher(fake_list, handler)
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=410, reason="Gone")

    with patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stream.call_count == 1
    assert handler.syncs == [([], False)]
    assert watcher.failed.is_set()
    assert not watcher.ready.is_set()


def test_run_forever_retries_initial_list_on_transient_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    list_attempts = 0

    def fake_list(**kwargs: Any) -> SimpleNamespace:
        nonlocal list_attempts
        list_attempts += 1
        if list_attempts == 1:
            raise ApiException(status=500, reason="temporary startup failure")
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="100"), items=[])

    watcher = _make_watcher(fake_list)
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.watcher.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert list_attempts == 2
    assert wait_values == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_run_forever_exits_fast_on_list_rbac_denied() -> None:
    def fake_list(**kwargs: Any) -> SimpleNamespace:
        raise ApiException(status=403, reason="forbidden")

    watcher = _make_watcher(fake_list)
    watch_factory = MagicMock()

    with patch("reloader.src.watcher.watch.Watch", watch_factory):
        watcher.run_forever(shutdown_event=threading.Event())

    watch_factory.assert_not_called()
    assert watcher.failed.is_set()
    assert not watcher.ready.is_set()


def test_run_forever_exits_fast_on_watch_rbac_denied() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    watcher = _make_watcher(_fake_list())
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="unauthorized")

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.watcher.threading.Event.wait", side_effect=fake_wait),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert wait_values == []
    assert watcher.failed.is_set()
    assert not watcher.ready.is_set()


def test_run_forever_applies_exponential_backoff_on_api_error() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []
    watcher = _make_watcher(_fake_list())
    call_count = 0
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.watcher.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_run_forever_handles_unexpected_handler_exception_with_backoff() -> None:
    shutdown_event = threading.Event()
    wait_values: list[float] = []

    class ExplodingHandler(RecordingHandler):
        def handle_event(self, event_type: str, obj: Any) -> None:
            raise RuntimeError("boom")

    watcher = _make_watcher(_fake_list(), ExplodingHandler())
    call_count = 0
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            return iter([{"type": "MODIFIED", "object": make_object("x", "101")}])
        shutdown_event.set()
        return iter([])

    mock_watcher.stream.side_effect = patched_stream

    def fake_wait(timeout: float | None = None) -> bool:
        if timeout is not None:
            wait_values.append(timeout)
        return False

    with (
        patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher),
        patch("reloader.src.watcher.threading.Event.wait", side_effect=fake_wait),
        patch("reloader.src.watcher.random.random", return_value=0.5),
    ):
        watcher.run_forever(shutdown_event=shutdown_event)

    assert wait_values == [pytest.approx(1.0)]
    assert call_count == 2


def test_request_stop_interrupts_active_stream() -> None:
    watcher = _make_watcher(_fake_list())
    mock_watcher = MagicMock()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        watcher.request_stop()
        return iter([{"type": "MODIFIED", "object": make_object("x", "101")}])

    mock_watcher.stream.side_effect = patched_stream

    with patch("reloader.src.watcher.watch.Watch", return_value=mock_watcher):
        watcher.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stop.call_count >= 2
    assert watcher.handler.events == []
