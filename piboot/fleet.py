"""Fleet-wide image refresh: pull and recreate every deployed service, then prune."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import LockTimeout
from .locks import ServiceLock
from .models import (
    FleetUpdateRun,
    ServiceDescriptor,
    ServiceUpdateResult,
    Settings,
    UpdateStatus,
)
from .runtime.docker import ComposeController, UpdateOutcome
from .storage import ServiceStore

log = logging.getLogger(__name__)


class FleetUpdater:
    """Refreshes images for every service found in the live compose tree."""

    def __init__(self, store: ServiceStore, controller: ComposeController, settings: Settings) -> None:
        self.store = store
        self.controller = controller
        self.settings = settings

    def run_update(self) -> FleetUpdateRun:
        run = FleetUpdateRun(started_at=datetime.now(timezone.utc))
        log.info("Starting Docker image update...")

        for service in self.store.list_known_services():
            result = self._update_service(service)
            run.results.append(result)

        log.info("Pruning unused Docker resources...")
        run.pruned = self.controller.prune(volumes=self.settings.prune_volumes)
        for step in run.pruned.steps:
            command = " ".join(step.command)
            if step.ok:
                log.info("%s: reclaimed %s", command, step.reclaimed or "0B")
            else:
                log.warning("%s failed: %s", command, step.error)

        run.finished_at = datetime.now(timezone.utc)
        failures = run.failures
        if run.ok:
            log.info("Docker image update complete: %d service(s) updated", len(run.results))
        else:
            log.error(
                "Docker image update finished with problems: %d of %d service(s) failed%s",
                len(failures),
                len(run.results),
                "" if run.pruned.ok else ", pruning failed",
            )
        return run

    def _update_service(self, service: ServiceDescriptor) -> ServiceUpdateResult:
        name = service.name
        log.info("Updating %s...", name)
        try:
            with ServiceLock(service.reload_lock_path, timeout=self.settings.lock_timeout):
                outcome = self.controller.force_recreate(service.compose_path)
        except LockTimeout as exc:
            log.warning("Skipping %s: %s", name, exc)
            return ServiceUpdateResult(service=name, status=UpdateStatus.skipped, error=str(exc))
        except Exception as exc:
            log.error("Failed to update %s: %s", name, exc)
            return ServiceUpdateResult(service=name, status=UpdateStatus.failed, error=str(exc))

        if outcome.outcome == UpdateOutcome.pull_failed:
            log.error("Failed to pull images for %s: %s", name, outcome.reason)
            return ServiceUpdateResult(
                service=name, status=UpdateStatus.pull_failed, error=_first_line(outcome.reason)
            )
        log.info("%s updated successfully", name)
        return ServiceUpdateResult(service=name, status=UpdateStatus.updated)


def _first_line(text: Optional[str]) -> Optional[str]:
    lines = (text or "").strip().splitlines()
    return lines[0] if lines else text
