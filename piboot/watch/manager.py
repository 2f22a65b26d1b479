"""Enable/disable/status control surface for per-service watchers."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from ..errors import PibootError
from ..locks import ServiceLock
from ..models import Settings, WatcherState, WatcherStatus
from ..runtime.docker import ComposeController
from ..storage import ServiceStore
from .reconciler import ConfigReconciler, SourceFactory
from .sources import Notify, create_change_source

log = logging.getLogger(__name__)


class WatcherManager:
    """Owns at most one ConfigReconciler per service.

    In-process duplicates are refused through the registry; watchers in
    other processes are detected through the service's watch lock.
    """

    def __init__(
        self,
        store: ServiceStore,
        controller: ComposeController,
        settings: Settings,
        source_factory: Optional[SourceFactory] = None,
    ) -> None:
        self.store = store
        self.controller = controller
        self.settings = settings
        self.source_factory = source_factory or self._default_source_factory
        self._watchers: Dict[str, ConfigReconciler] = {}
        self._lock = threading.Lock()

    def _default_source_factory(self, paths: Sequence[Path], notify: Notify):
        return create_change_source(
            self.settings.watch_mode, paths, notify, self.settings.poll_interval
        )

    def enable(self, name: str) -> bool:
        """Start watching ``name``; returns False when a watcher already runs."""
        with self._lock:
            existing = self._watchers.get(name)
            if existing is not None and existing.alive:
                log.info("[%s] Watcher already running", name)
                return False
            descriptor = self.store.require_deployed(name)
            guard = ServiceLock(descriptor.watch_lock_path)
            if not guard.acquire(timeout=0):
                log.info("[%s] Watcher already running in another process", name)
                return False
            reconciler = ConfigReconciler(
                descriptor,
                self.controller,
                source_factory=self.source_factory,
                debounce=self.settings.debounce_seconds,
                lock_timeout=self.settings.lock_timeout,
                guard=guard,
            )
            try:
                reconciler.start()
            except BaseException:
                guard.release()
                raise
            self._watchers[name] = reconciler
            return True

    def disable(self, name: str, timeout: Optional[float] = None) -> bool:
        """Stop the in-process watcher for ``name``; False if none was running."""
        with self._lock:
            reconciler = self._watchers.pop(name, None)
        if reconciler is None:
            return False
        reconciler.stop(timeout)
        return True

    def disable_all(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            reconcilers = list(self._watchers.values())
            self._watchers.clear()
        for reconciler in reconcilers:
            reconciler.stop(timeout)

    def get(self, name: str) -> Optional[ConfigReconciler]:
        return self._watchers.get(name)

    def status(self, name: str) -> WatcherState:
        reconciler = self._watchers.get(name)
        if reconciler is not None and reconciler.alive:
            return reconciler.state
        descriptor = self.store.descriptor(name)
        if ServiceLock(descriptor.watch_lock_path).is_held_elsewhere():
            return WatcherState.watching
        return WatcherState.stopped

    def statuses(self) -> List[WatcherStatus]:
        statuses: List[WatcherStatus] = []
        for descriptor in self.store.list_known_services():
            reconciler = self._watchers.get(descriptor.name)
            if reconciler is not None and reconciler.alive:
                statuses.append(reconciler.snapshot())
            else:
                statuses.append(
                    WatcherStatus(
                        service=descriptor.name,
                        state=self.status(descriptor.name),
                        watched_paths=list(descriptor.watched_paths),
                    )
                )
        return statuses


def run_watchers(manager: WatcherManager, names: Sequence[str], stop_event: threading.Event) -> int:
    """Enable watchers for ``names`` and block until ``stop_event`` is set.

    Returns at once with 0 when none of them could be started.
    """
    started = 0
    for name in names:
        try:
            if manager.enable(name):
                started += 1
        except (PibootError, OSError) as exc:
            log.error("[%s] Cannot start watcher: %s", name, exc)
    if not started:
        log.error("No watcher could be started")
        return started
    try:
        stop_event.wait()
    finally:
        manager.disable_all()
    return started
