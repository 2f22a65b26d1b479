"""Per-service config watcher that reloads compose projects on content change.

States move Watching -> Reloading -> Watching; disabling moves to Stopped.
Within one service reloads never overlap: the worker thread runs them one
at a time and holds the service's reload lock for each.
"""
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from ..errors import ExternalToolError, LockTimeout, PibootError, WatchError
from ..locks import ServiceLock
from ..models import ServiceDescriptor, WatcherState, WatcherStatus
from ..runtime.docker import ComposeController
from .signature import Signature, compute_signature
from .sources import ChangeSource, Notify

log = logging.getLogger(__name__)

_LOCK_SLICE = 0.5

SourceFactory = Callable[[Sequence[Path], Notify], ChangeSource]


class ConfigReconciler:
    """Watches one service's compose and env files and reloads on change."""

    def __init__(
        self,
        service: ServiceDescriptor,
        controller: ComposeController,
        source_factory: Optional[SourceFactory] = None,
        debounce: float = 1.5,
        lock_timeout: float = 900.0,
        guard: Optional[ServiceLock] = None,
    ) -> None:
        self.service = service
        self.controller = controller
        self.source_factory = source_factory
        self.debounce = debounce
        self.lock_timeout = lock_timeout
        self.guard = guard
        self.last_seen_signature: Signature = ()
        self.reloads = 0
        self.last_reload_ok: Optional[bool] = None
        self.last_error: Optional[str] = None

        self._state = WatcherState.stopped
        self._state_lock = threading.Lock()
        self._reload_lock = threading.Lock()
        self._cond = threading.Condition()
        self._pending = False
        self._stopping = False
        self._source: Optional[ChangeSource] = None
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------ lifecycle

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        if self.source_factory is None:
            raise WatchError(f"No change source configured for {self.service.name}")
        self.last_seen_signature = compute_signature(self.service.watched_paths)
        try:
            self._source = self.source_factory(self.service.watched_paths, self.notify)
        except BaseException:
            self._release_guard()
            raise
        self._set_state(WatcherState.watching)
        self._thread = threading.Thread(
            target=self._run,
            name=f"compose-watch-{self.service.name}",
            daemon=True,
        )
        self._thread.start()
        log.info(
            "[%s] Watching %s (%s mode)",
            self.service.name,
            ", ".join(str(path) for path in self.service.watched_paths),
            self._source.mode,
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop watching.

        A reload already running compose is allowed to finish; one still
        waiting for the reload lock is abandoned.
        """
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def notify(self) -> None:
        """Signal that a watched file may have changed (non-blocking)."""
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def snapshot(self) -> WatcherStatus:
        return WatcherStatus(
            service=self.service.name,
            state=self._state,
            watched_paths=list(self.service.watched_paths),
            mode=self._source.mode if self._source is not None else None,
            reloads=self.reloads,
            last_reload_ok=self.last_reload_ok,
            last_error=self.last_error,
        )

    # ------------------------------------------------------------------ reconcile

    def reconcile_once(self) -> bool:
        """Reload if the content differs from the last seen signature.

        Returns True when a reload was attempted.
        """
        with self._reload_lock:
            current = compute_signature(self.service.watched_paths)
            if current == self.last_seen_signature:
                log.debug("[%s] Content unchanged, no reload", self.service.name)
                return False
            self._reload(current)
            return True

    def _run(self) -> None:
        try:
            while self._wait_for_change():
                try:
                    self.reconcile_once()
                except PibootError as exc:
                    log.error("[%s] Reconcile failed: %s", self.service.name, exc)
                except OSError as exc:
                    log.error("[%s] Cannot read watched files: %s", self.service.name, exc)
        finally:
            source, self._source = self._source, None
            if source is not None:
                source.stop()
            self._release_guard()
            self._set_state(WatcherState.stopped)
            log.info("[%s] Watcher stopped", self.service.name)

    def _wait_for_change(self) -> bool:
        """Block until a change burst has been quiet for the debounce window."""
        with self._cond:
            while not self._pending and not self._stopping:
                self._cond.wait()
            if self._stopping:
                return False
            self._pending = False
            deadline = time.monotonic() + self.debounce
            while not self._stopping:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
                if self._pending:
                    self._pending = False
                    deadline = time.monotonic() + self.debounce
            return not self._stopping

    def _reload(self, signature: Signature) -> None:
        name = self.service.name
        path = self.service.compose_path
        previous = self._state
        self._set_state(WatcherState.reloading)
        log.info("[%s] Configuration changed, reloading", name)
        ok = False
        lock = ServiceLock(self.service.reload_lock_path)
        try:
            if not self._acquire_reload_lock(lock):
                if self._stopping:
                    self.last_error = "Reload abandoned, watcher stopping"
                    log.warning("[%s] Watcher stopping while waiting for %s, reload abandoned", name, lock.path)
                    return
                raise LockTimeout(f"Timed out after {self.lock_timeout:g}s waiting for {lock.path}")
            try:
                self.controller.down(path)
            except ExternalToolError as exc:
                self.last_error = str(exc)
                log.error("[%s] Reload aborted, stop failed; containers left as they were: %s", name, exc)
                return
            try:
                self.controller.up(path)
            except ExternalToolError as exc:
                self.last_error = str(exc)
                log.error(
                    "[%s] ALERT: service is stopped, start after reload failed: %s. "
                    "Fix the configuration; the next change will retry.",
                    name,
                    exc,
                )
                return
            ok = True
            self.last_error = None
            log.info("[%s] Reload complete", name)
        except LockTimeout as exc:
            self.last_error = str(exc)
            log.error("[%s] Reload skipped: %s", name, exc)
        finally:
            lock.release()
            self.last_seen_signature = signature
            self.reloads += 1
            self.last_reload_ok = ok
            if self._state == WatcherState.reloading:
                self._set_state(previous)

    # ------------------------------------------------------------------ helpers

    def _acquire_reload_lock(self, lock: ServiceLock) -> bool:
        """Wait up to ``lock_timeout`` for the reload lock, giving up early on stop."""
        deadline = time.monotonic() + self.lock_timeout
        while not self._stopping:
            remaining = deadline - time.monotonic()
            if lock.acquire(timeout=max(0.0, min(_LOCK_SLICE, remaining))):
                return True
            if remaining <= _LOCK_SLICE:
                return False
        return False

    def _set_state(self, state: WatcherState) -> None:
        with self._state_lock:
            self._state = state

    def _release_guard(self) -> None:
        if self.guard is not None:
            self.guard.release()
