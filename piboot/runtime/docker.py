"""Utilities for invoking docker compose commands."""
from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from ..constants import DEFAULT_COMMAND_TIMEOUT
from ..errors import ControllerError, ExternalToolError
from ..models import PruneStep, PruneSummary

log = logging.getLogger(__name__)

_RECLAIMED_RE = re.compile(r"Total reclaimed space:\s*(\S+)")


@dataclass(frozen=True)
class ComposeCommand:
    """The compose entry point available on this host."""

    argv: Tuple[str, ...]

    def __str__(self) -> str:
        return " ".join(self.argv)


PLUGIN_COMPOSE = ComposeCommand(("docker", "compose"))
STANDALONE_COMPOSE = ComposeCommand(("docker-compose",))


def detect_compose_command(timeout: float = 30.0) -> ComposeCommand:
    """Pick ``docker compose`` when the plugin works, else ``docker-compose``.

    Call once per process and pass the result to every controller.
    """
    try:
        result = subprocess.run(
            [*PLUGIN_COMPOSE.argv, "version"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        if result.returncode == 0:
            log.debug("Using compose plugin: %s", PLUGIN_COMPOSE)
            return PLUGIN_COMPOSE
    except (OSError, subprocess.TimeoutExpired) as exc:
        log.debug("docker compose plugin check failed: %s", exc)
    if shutil.which(STANDALONE_COMPOSE.argv[0]):
        log.debug("Using standalone compose: %s", STANDALONE_COMPOSE)
        return STANDALONE_COMPOSE
    raise ExternalToolError("Neither 'docker compose' nor 'docker-compose' found")


class UpdateOutcome(str, Enum):
    updated = "updated"
    pull_failed = "pull_failed"


@dataclass
class RecreateResult:
    outcome: UpdateOutcome
    reason: Optional[str] = None


class ComposeController:
    """Wrapper around one compose entry point for start/stop/status/update."""

    def __init__(
        self,
        command: ComposeCommand,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        docker_binary: str = "docker",
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.docker_binary = docker_binary

    def up(self, compose_path: Path) -> None:
        """Pull images (best effort) then start the project detached."""
        self._require_file(compose_path, "start")
        try:
            ok, detail = self._run(self._compose(compose_path, "pull"), compose_path.parent)
        except ControllerError as exc:
            ok, detail = False, str(exc)
        if not ok:
            log.warning("Pull failed for %s, starting with cached images: %s", compose_path, detail)
        command = self._compose(compose_path, "up", "--detach")
        ok, detail = self._run(command, compose_path.parent)
        if not ok:
            raise ControllerError(f"Failed to start {compose_path}", command, detail)

    def down(self, compose_path: Path) -> None:
        """Tear down the project; a missing compose file counts as stopped."""
        if not compose_path.is_file():
            log.warning("No compose file at %s, treating as stopped", compose_path)
            return
        command = self._compose(compose_path, "down")
        ok, detail = self._run(command, compose_path.parent)
        if not ok:
            raise ControllerError(f"Failed to stop {compose_path}", command, detail)

    def status(self, compose_path: Path) -> bool:
        """True when the project has at least one container."""
        if not compose_path.is_file():
            return False
        try:
            ok, detail = self._run(self._compose(compose_path, "ps", "--quiet"), compose_path.parent)
        except ExternalToolError as exc:
            log.warning("Status check failed for %s: %s", compose_path, exc)
            return False
        return ok and any(line.strip() for line in detail.splitlines())

    def force_recreate(self, compose_path: Path) -> RecreateResult:
        """Pull then recreate every container; used by the fleet updater."""
        self._require_file(compose_path, "update")
        ok, detail = self._run(self._compose(compose_path, "pull"), compose_path.parent)
        if not ok:
            return RecreateResult(UpdateOutcome.pull_failed, detail)
        command = self._compose(compose_path, "up", "--detach", "--force-recreate")
        ok, detail = self._run(command, compose_path.parent)
        if not ok:
            raise ControllerError(f"Failed to recreate {compose_path}", command, detail)
        return RecreateResult(UpdateOutcome.updated)

    def prune(self, volumes: bool = True) -> PruneSummary:
        """Remove unused images, containers, networks and (optionally) volumes."""
        system_prune = [self.docker_binary, "system", "prune", "--force"]
        if volumes:
            system_prune.append("--volumes")
        commands = [
            [self.docker_binary, "image", "prune", "--all", "--force"],
            system_prune,
        ]
        summary = PruneSummary()
        for command in commands:
            try:
                ok, detail = self._run(command, None)
            except ExternalToolError as exc:
                summary.steps.append(PruneStep(command=command, ok=False, error=str(exc)))
                continue
            match = _RECLAIMED_RE.search(detail) if ok else None
            summary.steps.append(
                PruneStep(
                    command=command,
                    ok=ok,
                    reclaimed=match.group(1) if match else None,
                    error=None if ok else detail,
                )
            )
        return summary

    # ------------------------------------------------------------------ helpers

    def _compose(self, compose_path: Path, *args: str) -> List[str]:
        return [*self.command.argv, "--file", str(compose_path), *args]

    @staticmethod
    def _require_file(compose_path: Path, action: str) -> None:
        if not compose_path.is_file():
            raise ControllerError(f"Cannot {action}: compose file not found at {compose_path}")

    def _run(self, command: List[str], workdir: Optional[Path]) -> Tuple[bool, str]:
        log.debug("Running %s", " ".join(command))
        try:
            process = subprocess.run(
                command,
                cwd=str(workdir) if workdir else None,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise ControllerError(
                f"Timed out after {self.timeout:g}s: {' '.join(command)}", command
            ) from exc
        except OSError as exc:
            raise ControllerError(f"Cannot run {command[0]}: {exc}", command) from exc
        success = process.returncode == 0
        detail = process.stdout.strip() if success else process.stderr.strip()
        if not detail and not success:
            detail = f"exit status {process.returncode}"
        return success, detail
