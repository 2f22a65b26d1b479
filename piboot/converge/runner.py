"""Setup runner: deploy, choose image tag, start, then hand over to a watcher."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..deploy import StateDeployer, select_image_tag
from ..errors import PibootError
from ..models import SetupRecord, Settings, StageEvent
from ..runtime.docker import ComposeController
from ..storage import ServiceStore

log = logging.getLogger(__name__)

# Receives a service name; returns False when the watcher could not start.
WatcherHook = Callable[[str], bool]


@dataclass
class SetupRunner:
    store: ServiceStore
    deployer: StateDeployer
    controller: ComposeController
    settings: Settings
    enable_watcher: Optional[WatcherHook] = None
    interactive: Optional[bool] = None

    def run(self, name: str) -> Tuple[bool, List[StageEvent]]:
        events: List[StageEvent] = []

        try:
            service = self.store.descriptor(name)
        except PibootError as exc:
            self._record(name, events, "resolve", "failed", str(exc))
            return False, events

        self._record(name, events, "deploy", "started")
        try:
            result = self.deployer.deploy(service)
        except PibootError as exc:
            self._record(name, events, "deploy", "failed", str(exc))
            return False, events
        self._record(name, events, "deploy", "ok", ", ".join(result.changes) or "unchanged")

        options = self.settings.options_for(name)
        if options.image_tags:
            self._record(name, events, "select-tag", "started")
            try:
                tag = select_image_tag(
                    service,
                    options.image_tags,
                    interactive=self.interactive,
                    timeout=options.tag_prompt_timeout,
                    key=self.settings.image_tag_key,
                )
            except PibootError as exc:
                self._record(name, events, "select-tag", "failed", str(exc))
                return False, events
            self._record(name, events, "select-tag", "ok", tag)

        self._record(name, events, "start", "started")
        try:
            self.controller.up(service.compose_path)
        except PibootError as exc:
            self._record(name, events, "start", "failed", str(exc))
            return False, events
        self._record(name, events, "start", "ok")

        if self.enable_watcher is not None:
            self._record(name, events, "watch", "started")
            try:
                started = self.enable_watcher(name)
            except PibootError as exc:
                self._record(name, events, "watch", "failed", str(exc))
                return False, events
            self._record(
                name, events, "watch", "ok", "watching" if started else "will start on next boot"
            )

        return True, events

    def run_many(self, names: Sequence[str]) -> List[SetupRecord]:
        """Set up each service independently; one failure never stops the rest."""
        records: List[SetupRecord] = []
        for name in names:
            ok, events = self.run(name)
            records.append(SetupRecord(service=name, ok=ok, events=events))
        return records

    @staticmethod
    def _record(
        name: str,
        events: List[StageEvent],
        stage: str,
        status: str,
        detail: str | None = None,
    ) -> None:
        event = StageEvent(stage=stage, status=status, detail=detail)
        events.append(event)
        if status == "failed":
            log.error("[%s] %s failed: %s", name, stage, detail)
        elif status == "ok":
            log.info("[%s] %s ok%s", name, stage, f" ({detail})" if detail else "")
