"""Centralized constants for piboot.

Filesystem layout, well-known file names and default timings live here,
not scattered across the deployer, controller and watcher.
"""

from __future__ import annotations

from pathlib import Path

# ---------------------------------------------------------------------------
# Host filesystem layout
# Live compose projects are {COMPOSE_ROOT}/{service}/compose.yml, persistent
# data is {DATA_ROOT}/{service}/. The source tree mirrors the compose layout.
# ---------------------------------------------------------------------------
DEFAULT_COMPOSE_ROOT = Path("/opt/docker")
DEFAULT_DATA_ROOT = Path("/srv")
DEFAULT_SOURCE_ROOT = Path("/usr/share/piboot/services")
DEFAULT_CONFIG_PATH = Path("/etc/piboot/config.yaml")
CONFIG_ENV_VAR = "PIBOOT_CONFIG"

COMPOSE_FILENAME = "compose.yml"
ENV_FILENAME = ".env"

# Advisory locks kept next to the compose file of each service.
RELOAD_LOCK_FILENAME = ".reload.lock"
WATCH_LOCK_FILENAME = ".watch.lock"

# ---------------------------------------------------------------------------
# File modes
# ---------------------------------------------------------------------------
COMPOSE_FILE_MODE = 0o644
ENV_FILE_MODE = 0o600

# ---------------------------------------------------------------------------
# Environment file keys
# ---------------------------------------------------------------------------
IMAGE_TAG_KEY = "IMAGE_TAG"

# ---------------------------------------------------------------------------
# Timings (seconds)
# ---------------------------------------------------------------------------
DEFAULT_DEBOUNCE_SECONDS = 1.5
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_COMMAND_TIMEOUT = 600.0
DEFAULT_LOCK_TIMEOUT = 900.0

# ---------------------------------------------------------------------------
# Host integration (OpenRC / periodic)
# ---------------------------------------------------------------------------
WATCHER_SERVICE_PREFIX = "compose-watch-"
INIT_DIR = Path("/etc/init.d")
PERIODIC_DAILY_DIR = Path("/etc/periodic/daily")
UPDATE_JOB_NAME = "docker-update"
DEFAULT_UPDATE_LOG = Path("/var/log/docker-update.log")
WATCHER_LOG_DIR = Path("/var/log")

SERVICE_NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]*$"
