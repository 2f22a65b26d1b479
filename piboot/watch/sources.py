"""Change notification sources for the config watcher.

Both sources call ``notify()`` when a watched file may have changed; the
reconciler decides whether the content really changed.
"""
from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import WatchError
from ..models import WatchMode
from .signature import Signature, compute_signature

log = logging.getLogger(__name__)

Notify = Callable[[], None]


class ChangeSource(ABC):
    mode: str = ""

    def __init__(self, paths: Sequence[Path], notify: Notify) -> None:
        self.paths = [Path(os.path.abspath(path)) for path in paths]
        self.notify = notify

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...


class _WatchedFileHandler(FileSystemEventHandler):
    def __init__(self, targets: set[str], notify: Notify) -> None:
        super().__init__()
        self.targets = targets
        self.notify = notify

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        candidates = {os.fsdecode(event.src_path)}
        dest = getattr(event, "dest_path", "")
        if dest:
            candidates.add(os.fsdecode(dest))
        if candidates & self.targets:
            self.notify()


class EventChangeSource(ChangeSource):
    """Filesystem events via watchdog on the directories holding the files.

    Directories are watched rather than files so editors that replace a
    file by rename are still seen.
    """

    mode = "event"

    def __init__(self, paths: Sequence[Path], notify: Notify) -> None:
        super().__init__(paths, notify)
        self._observer: Optional[Observer] = None

    def start(self) -> None:
        targets = {str(path) for path in self.paths}
        handler = _WatchedFileHandler(targets, self.notify)
        observer = Observer()
        try:
            for directory in sorted({path.parent for path in self.paths}):
                if not directory.is_dir():
                    raise WatchError(f"Cannot watch missing directory {directory}")
                observer.schedule(handler, str(directory), recursive=False)
            observer.start()
        except WatchError:
            raise
        except (OSError, RuntimeError) as exc:
            raise WatchError(f"File events unavailable: {exc}") from exc
        self._observer = observer

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)


class PollingChangeSource(ChangeSource):
    """Re-hash the watched files every ``interval`` seconds."""

    mode = "poll"

    def __init__(self, paths: Sequence[Path], notify: Notify, interval: float) -> None:
        super().__init__(paths, notify)
        self.interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last: Signature = ()

    def start(self) -> None:
        self._last = compute_signature(self.paths)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="compose-poll", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 5)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                current = compute_signature(self.paths)
            except OSError as exc:
                log.warning("Polling %s failed: %s", self.paths, exc)
                continue
            if current != self._last:
                self._last = current
                self.notify()


def create_change_source(
    mode: WatchMode,
    paths: Sequence[Path],
    notify: Notify,
    poll_interval: float,
) -> ChangeSource:
    """Return a started change source, falling back to polling."""
    if mode != WatchMode.poll:
        source = EventChangeSource(paths, notify)
        try:
            source.start()
            return source
        except WatchError as exc:
            log.warning("Event watching unavailable (%s); falling back to polling", exc)
    source = PollingChangeSource(paths, notify, poll_interval)
    source.start()
    return source
