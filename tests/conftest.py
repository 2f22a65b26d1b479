"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Generator, List, Tuple
from unittest.mock import MagicMock, patch

import pytest

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from piboot.deploy import StateDeployer
from piboot.errors import ControllerError
from piboot.models import ServiceDescriptor, Settings, WatchMode
from piboot.runtime.docker import PLUGIN_COMPOSE, ComposeController
from piboot.storage import ServiceStore

WIREGUARD_COMPOSE = """\
services:
  wireguard:
    image: lscr.io/linuxserver/wireguard:${IMAGE_TAG:-latest}
    cap_add:
      - NET_ADMIN
    env_file: .env
    volumes:
      - /srv/wireguard:/config
    ports:
      - 51820:51820/udp
    restart: unless-stopped
"""

WIREGUARD_ENV = """\
PUID=1000
PGID=1000
TZ=Etc/UTC
IMAGE_TAG=latest
"""

PIHOLE_COMPOSE = """\
services:
  pihole:
    image: pihole/pihole:latest
    restart: unless-stopped
"""


class RecordingController:
    """Stands in for ComposeController and records up/down calls in order."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Path]] = []
        self.fail_down = False
        self.fail_up = False
        self._lock = threading.Lock()

    def down(self, compose_path: Path) -> None:
        with self._lock:
            self.calls.append(("down", compose_path))
        if self.fail_down:
            raise ControllerError(f"Failed to stop {compose_path}", detail="daemon unreachable")

    def up(self, compose_path: Path) -> None:
        with self._lock:
            self.calls.append(("up", compose_path))
        if self.fail_up:
            raise ControllerError(f"Failed to start {compose_path}", detail="invalid compose file")

    def status(self, compose_path: Path) -> bool:
        return bool(self.calls) and self.calls[-1][0] == "up"


class StubSource:
    """Change source that only fires when a test calls ``fire()``."""

    mode = "stub"

    def __init__(self, paths, notify) -> None:
        self.paths = list(paths)
        self.notify = notify
        self.stopped = False

    def start(self) -> None:
        pass

    def stop(self) -> None:
        self.stopped = True

    def fire(self) -> None:
        self.notify()


def wait_for(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    """Settings rooted in temp_dir with short timings."""
    return Settings(
        compose_root=temp_dir / "opt" / "docker",
        data_root=temp_dir / "srv",
        source_root=temp_dir / "share" / "services",
        debounce_seconds=0.2,
        poll_interval=0.1,
        command_timeout=5,
        lock_timeout=2,
        watch_mode=WatchMode.poll,
        require_root=False,
        update_log_file=temp_dir / "log" / "docker-update.log",
    )


@pytest.fixture
def store(settings: Settings) -> ServiceStore:
    return ServiceStore(settings)


@pytest.fixture
def source_tree(settings: Settings) -> Path:
    """Source definitions for wireguard (compose + env) and pihole (compose only)."""
    wireguard = settings.source_root / "wireguard"
    wireguard.mkdir(parents=True)
    (wireguard / "compose.yml").write_text(WIREGUARD_COMPOSE)
    (wireguard / ".env").write_text(WIREGUARD_ENV)
    pihole = settings.source_root / "pihole"
    pihole.mkdir(parents=True)
    (pihole / "compose.yml").write_text(PIHOLE_COMPOSE)
    return settings.source_root


@pytest.fixture
def deployed(store: ServiceStore, source_tree: Path) -> ServiceDescriptor:
    """The wireguard service deployed into the live compose tree."""
    descriptor = store.descriptor("wireguard")
    StateDeployer(store).deploy(descriptor)
    return descriptor


@pytest.fixture
def recording_controller() -> RecordingController:
    return RecordingController()


@pytest.fixture
def stub_sources() -> Tuple[Callable, List[StubSource]]:
    """A source factory plus the list of sources it has created."""
    created: List[StubSource] = []

    def factory(paths, notify) -> StubSource:
        source = StubSource(paths, notify)
        source.start()
        created.append(source)
        return source

    return factory, created


@pytest.fixture
def mock_docker() -> Generator[MagicMock, None, None]:
    """Mock Docker operations."""
    with patch("piboot.runtime.docker.subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield mock_run


@pytest.fixture
def controller(mock_docker: MagicMock) -> ComposeController:
    return ComposeController(PLUGIN_COMPOSE, timeout=5)


@pytest.fixture
def poll_until() -> Callable[..., bool]:
    """Expose ``wait_for`` to tests that watch background threads."""
    return wait_for
