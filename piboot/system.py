"""Host integration: privilege checks, OpenRC watcher services and periodic jobs."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from . import constants
from .errors import ConfigurationError, FilesystemError
from .models import Settings
from .rendering import ScriptRenderer, UpdateJobContext, WatcherUnitContext
from .storage import validate_service_name

log = logging.getLogger(__name__)

SCRIPT_MODE = 0o755


def require_root(settings: Settings, action: str) -> None:
    """Refuse to continue unprivileged when settings demand root."""
    if settings.require_root and os.geteuid() != 0:
        raise ConfigurationError(f"{action} must be run as root")


def piboot_command() -> List[str]:
    """Absolute path of the installed ``piboot`` entry point when available."""
    return [shutil.which("piboot") or "piboot"]


def watcher_name(service: str) -> str:
    return f"{constants.WATCHER_SERVICE_PREFIX}{validate_service_name(service)}"


class OpenRCInstaller:
    """Installs per-service watcher daemons and the daily update job."""

    def __init__(
        self,
        settings: Settings,
        renderer: Optional[ScriptRenderer] = None,
        init_dir: Path = constants.INIT_DIR,
        periodic_dir: Path = constants.PERIODIC_DAILY_DIR,
        log_dir: Path = constants.WATCHER_LOG_DIR,
        command: Optional[List[str]] = None,
        config_path: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.renderer = renderer or ScriptRenderer()
        self.init_dir = init_dir
        self.periodic_dir = periodic_dir
        self.log_dir = log_dir
        self.command = command or piboot_command()
        self.config_path = config_path

    def _base_command(self) -> List[str]:
        command = list(self.command)
        if self.config_path is not None:
            command += ["--config", str(self.config_path)]
        return command

    def install_watcher(self, service: str) -> bool:
        """Write, enable and start ``compose-watch-<service>``.

        Returns False when the daemon could not be started right away.
        """
        name = watcher_name(service)
        script = self.renderer.render_watcher_unit(
            WatcherUnitContext(
                service_name=service,
                watcher_name=name,
                command=self._base_command() + ["watch", service],
                log_file=self.log_dir / f"{name}.log",
            )
        )
        target = self.init_dir / name
        _write_script(target, script)
        log.info("[%s] Installed watcher service %s", service, target)

        self._run(["rc-update", "add", name, "default"])
        if not self._run(["rc-service", name, "restart"]):
            log.warning("[%s] Could not start %s (may need reboot)", service, name)
            return False
        return True

    def remove_watcher(self, service: str) -> None:
        name = watcher_name(service)
        target = self.init_dir / name
        self._run(["rc-service", name, "stop"])
        self._run(["rc-update", "del", name, "default"])
        if target.exists():
            try:
                target.unlink()
            except OSError as exc:
                raise FilesystemError(f"Cannot remove {target}: {exc}", path=target) from exc
        log.info("[%s] Removed watcher service %s", service, name)

    def installed_watchers(self) -> List[str]:
        if not self.init_dir.is_dir():
            return []
        return sorted(
            path.name
            for path in self.init_dir.glob(f"{constants.WATCHER_SERVICE_PREFIX}*")
            if path.is_file()
        )

    def stop_all_watchers(self) -> None:
        """Stop every installed watcher before services are reconfigured."""
        for name in self.installed_watchers():
            self._run(["rc-service", name, "stop"])
        log.info("Compose watchers stopped")

    def install_update_job(self) -> Path:
        script = self.renderer.render_update_job(
            UpdateJobContext(
                command=self._base_command() + ["update"],
                log_file=self.settings.update_log_file,
            )
        )
        target = self.periodic_dir / constants.UPDATE_JOB_NAME
        _write_script(target, script)
        self._run(["rc-update", "add", "crond", "default"])
        self._run(["rc-service", "crond", "start"])
        log.info("Daily Docker update job configured at %s", target)
        return target

    @staticmethod
    def _run(command: List[str]) -> bool:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.warning("%s failed: %s", " ".join(command), exc)
            return False
        if result.returncode != 0:
            log.debug("%s exited %d: %s", " ".join(command), result.returncode, result.stderr.strip())
            return False
        return True


def _write_script(target: Path, content: str) -> None:
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        target.chmod(SCRIPT_MODE)
    except OSError as exc:
        raise FilesystemError(f"Cannot write {target}: {exc}", path=target) from exc
