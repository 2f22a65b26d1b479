"""Pydantic models for piboot settings, run results and watcher status."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, field_validator

from . import constants


@dataclass(frozen=True)
class ServiceDescriptor:
    """Resolved file locations for one compose-managed service.

    Constructed on demand from the service name; never persisted.
    """

    name: str
    compose_path: Path
    env_path: Path
    data_path: Path

    @property
    def compose_dir(self) -> Path:
        return self.compose_path.parent

    @property
    def watched_paths(self) -> tuple[Path, Path]:
        return (self.compose_path, self.env_path)

    @property
    def reload_lock_path(self) -> Path:
        return self.compose_dir / constants.RELOAD_LOCK_FILENAME

    @property
    def watch_lock_path(self) -> Path:
        return self.compose_dir / constants.WATCH_LOCK_FILENAME

    def is_deployed(self) -> bool:
        return self.compose_path.is_file()


class ServiceOptions(BaseModel):
    image_tags: List[str] = Field(default_factory=list)
    tag_prompt_timeout: Optional[float] = Field(default=None, gt=0)


class WatchMode(str, Enum):
    auto = "auto"
    event = "event"
    poll = "poll"


class Settings(BaseModel):
    compose_root: Path = constants.DEFAULT_COMPOSE_ROOT
    data_root: Path = constants.DEFAULT_DATA_ROOT
    source_root: Path = constants.DEFAULT_SOURCE_ROOT
    debounce_seconds: float = Field(default=constants.DEFAULT_DEBOUNCE_SECONDS, ge=0)
    poll_interval: float = Field(default=constants.DEFAULT_POLL_INTERVAL, gt=0)
    command_timeout: float = Field(default=constants.DEFAULT_COMMAND_TIMEOUT, gt=0)
    lock_timeout: float = Field(default=constants.DEFAULT_LOCK_TIMEOUT, ge=0)
    watch_mode: WatchMode = WatchMode.auto
    image_tag_key: str = constants.IMAGE_TAG_KEY
    prune_volumes: bool = True
    require_root: bool = True
    log_file: Optional[Path] = None
    update_log_file: Path = constants.DEFAULT_UPDATE_LOG
    services: Dict[str, ServiceOptions] = Field(default_factory=dict)

    @field_validator("compose_root", "data_root", "source_root")
    @classmethod
    def ensure_absolute(cls, value: Path) -> Path:
        if not value.is_absolute():
            raise ValueError("Paths must be absolute")
        return value

    @field_validator("image_tag_key")
    @classmethod
    def ensure_plain_key(cls, value: str) -> str:
        if not value or "=" in value or any(ch.isspace() for ch in value):
            raise ValueError("Environment keys must be non-empty without '=' or whitespace")
        return value

    def options_for(self, name: str) -> ServiceOptions:
        return self.services.get(name) or ServiceOptions()


class WatcherState(str, Enum):
    stopped = "Stopped"
    watching = "Watching"
    reloading = "Reloading"


class WatcherStatus(BaseModel):
    service: str
    state: WatcherState = WatcherState.stopped
    watched_paths: List[Path] = Field(default_factory=list)
    mode: Optional[str] = None
    reloads: int = 0
    last_reload_ok: Optional[bool] = None
    last_error: Optional[str] = None


class UpdateStatus(str, Enum):
    updated = "updated"
    pull_failed = "pull_failed"
    failed = "failed"
    skipped = "skipped"


class ServiceUpdateResult(BaseModel):
    service: str
    status: UpdateStatus
    error: Optional[str] = None


class PruneStep(BaseModel):
    command: List[str]
    ok: bool
    reclaimed: Optional[str] = None
    error: Optional[str] = None


class PruneSummary(BaseModel):
    steps: List[PruneStep] = Field(default_factory=list)

    @computed_field
    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)


class FleetUpdateRun(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[ServiceUpdateResult] = Field(default_factory=list)
    pruned: PruneSummary = Field(default_factory=PruneSummary)

    @property
    def failures(self) -> List[ServiceUpdateResult]:
        return [result for result in self.results if result.status != UpdateStatus.updated]

    @computed_field
    @property
    def ok(self) -> bool:
        return not self.failures and self.pruned.ok


class DeployResult(BaseModel):
    service: str
    changes: List[str] = Field(default_factory=list)


class StageEvent(BaseModel):
    stage: str
    status: Literal["started", "ok", "failed"]
    detail: Optional[str] = None


class SetupRecord(BaseModel):
    service: str
    ok: bool
    events: List[StageEvent] = Field(default_factory=list)


class ServiceStatus(BaseModel):
    """Reported state of one deployed service for the control API."""

    name: str
    running: bool = False
    watcher: WatcherState = WatcherState.stopped
    image_tag: Optional[str] = None


class StatusResponse(BaseModel):
    """Wrapper returned from ``GET /api/services``."""

    services: List[ServiceStatus] = Field(default_factory=list)
