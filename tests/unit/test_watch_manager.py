"""Tests for the watcher manager and an end-to-end polling reload."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from piboot.deploy import select_image_tag
from piboot.errors import ConfigurationError
from piboot.locks import ServiceLock
from piboot.models import ServiceDescriptor, Settings, WatcherState
from piboot.storage import ServiceStore
from piboot.watch.manager import WatcherManager, run_watchers


@pytest.fixture
def manager(store: ServiceStore, recording_controller, settings: Settings, stub_sources):
    factory, _ = stub_sources
    watchers = WatcherManager(store, recording_controller, settings, source_factory=factory)
    yield watchers
    watchers.disable_all(timeout=5)


class TestEnableDisable:
    """At most one watcher per service."""

    def test_enable_twice(self, manager: WatcherManager, deployed: ServiceDescriptor, stub_sources):
        _, sources = stub_sources
        assert manager.enable("wireguard") is True
        assert manager.enable("wireguard") is False
        assert len(sources) == 1
        assert manager.status("wireguard") == WatcherState.watching

    def test_disable(self, manager: WatcherManager, deployed: ServiceDescriptor):
        manager.enable("wireguard")
        reconciler = manager.get("wireguard")
        assert manager.disable("wireguard", timeout=5) is True
        assert not reconciler.alive
        assert manager.status("wireguard") == WatcherState.stopped
        assert manager.disable("wireguard") is False

    def test_disable_releases_watch_lock(self, manager: WatcherManager, deployed: ServiceDescriptor):
        manager.enable("wireguard")
        manager.disable("wireguard", timeout=5)
        lock = ServiceLock(deployed.watch_lock_path)
        assert lock.acquire(timeout=0)
        lock.release()

    def test_enable_after_disable(self, manager: WatcherManager, deployed: ServiceDescriptor, stub_sources):
        _, sources = stub_sources
        manager.enable("wireguard")
        manager.disable("wireguard", timeout=5)
        assert manager.enable("wireguard") is True
        assert len(sources) == 2

    def test_watcher_in_other_process(self, manager: WatcherManager, deployed: ServiceDescriptor, stub_sources):
        _, sources = stub_sources
        other = ServiceLock(deployed.watch_lock_path)
        other.acquire()
        try:
            assert manager.enable("wireguard") is False
            assert manager.status("wireguard") == WatcherState.watching
            assert sources == []
        finally:
            other.release()
        assert manager.status("wireguard") == WatcherState.stopped

    def test_not_deployed(self, manager: WatcherManager, source_tree: Path):
        with pytest.raises(ConfigurationError):
            manager.enable("wireguard")

    def test_statuses(self, manager: WatcherManager, deployed: ServiceDescriptor, store: ServiceStore, source_tree: Path):
        from piboot.deploy import StateDeployer

        StateDeployer(store).deploy(store.descriptor("pihole"))
        manager.enable("wireguard")
        statuses = {status.service: status for status in manager.statuses()}
        assert statuses["wireguard"].state == WatcherState.watching
        assert statuses["wireguard"].mode == "stub"
        assert statuses["pihole"].state == WatcherState.stopped
        assert statuses["pihole"].watched_paths == list(store.descriptor("pihole").watched_paths)


class TestRunWatchers:
    def test_returns_when_stopped(self, manager: WatcherManager, deployed: ServiceDescriptor):
        stop_event = threading.Event()
        stop_event.set()
        started = run_watchers(manager, ["wireguard", "missing"], stop_event)
        assert started == 1
        assert manager.get("wireguard") is None

    def test_nothing_started_returns_at_once(self, manager: WatcherManager, deployed: ServiceDescriptor):
        stop_event = threading.Event()
        result = []
        worker = threading.Thread(
            target=lambda: result.append(run_watchers(manager, ["missing", "nextcloud"], stop_event)),
            daemon=True,
        )
        worker.start()
        worker.join(5)
        assert not worker.is_alive()
        assert result == [0]
        assert not stop_event.is_set()


class TestEndToEnd:
    """Wireguard deployed from source, watched by polling, reloaded on tag change."""

    def test_tag_change_reloads(self, store: ServiceStore, recording_controller, settings: Settings, deployed: ServiceDescriptor, poll_until):
        watchers = WatcherManager(store, recording_controller, settings)
        try:
            recording_controller.up(deployed.compose_path)
            assert recording_controller.status(deployed.compose_path)
            assert watchers.enable("wireguard")
            assert watchers.get("wireguard").snapshot().mode == "poll"

            select_image_tag(deployed, ["latest", "edge"], interactive=True, input_fn=lambda prompt, timeout: "e")

            assert poll_until(lambda: watchers.get("wireguard").reloads == 1)
            assert recording_controller.calls == [
                ("up", deployed.compose_path),
                ("down", deployed.compose_path),
                ("up", deployed.compose_path),
            ]
            assert watchers.get("wireguard").last_reload_ok is True
            assert recording_controller.status(deployed.compose_path)
            assert poll_until(lambda: watchers.status("wireguard") == WatcherState.watching)
        finally:
            watchers.disable_all(timeout=5)
