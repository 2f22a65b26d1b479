"""Helpers for reading settings and resolving service file layouts."""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import ValidationError

from . import constants
from .errors import ConfigurationError
from .models import ServiceDescriptor, Settings

log = logging.getLogger(__name__)

_NAME_RE = re.compile(constants.SERVICE_NAME_PATTERN)


def load_settings(path: Optional[Path] = None, **overrides: Any) -> Settings:
    """Load settings from YAML, falling back to defaults when the file is absent.

    ``overrides`` with a non-``None`` value take precedence over the file.
    """
    if path is None:
        path = Path(os.getenv(constants.CONFIG_ENV_VAR, str(constants.DEFAULT_CONFIG_PATH)))
    data: dict[str, Any] = {}
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read settings at {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings at {path} must be a mapping")
    else:
        log.debug("No settings file at %s, using defaults", path)
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


def save_settings(settings: Settings, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = settings.model_dump(mode="json", exclude_defaults=True)
    with path.open("w") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)


class ServiceStore:
    """Path computation for services; the live compose tree is the registry."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.compose_root = settings.compose_root
        self.data_root = settings.data_root
        self.source_root = settings.source_root

    def descriptor(self, name: str) -> ServiceDescriptor:
        validate_service_name(name)
        compose_dir = self.compose_root / name
        return ServiceDescriptor(
            name=name,
            compose_path=compose_dir / constants.COMPOSE_FILENAME,
            env_path=compose_dir / constants.ENV_FILENAME,
            data_path=self.data_root / name,
        )

    def source_compose_path(self, name: str) -> Path:
        validate_service_name(name)
        return self.source_root / name / constants.COMPOSE_FILENAME

    def source_env_path(self, name: str) -> Path:
        validate_service_name(name)
        return self.source_root / name / constants.ENV_FILENAME

    def require_deployed(self, name: str) -> ServiceDescriptor:
        descriptor = self.descriptor(name)
        if not descriptor.is_deployed():
            raise ConfigurationError(
                f"Service {name} is not deployed (no {descriptor.compose_path})"
            )
        return descriptor

    # Discovery -------------------------------------------------------------

    def list_known_services(self) -> List[ServiceDescriptor]:
        """Return every service with a live compose file, sorted by name."""
        if not self.compose_root.is_dir():
            return []
        descriptors: List[ServiceDescriptor] = []
        for entry in sorted(self.compose_root.iterdir()):
            if not entry.is_dir() or not _NAME_RE.match(entry.name):
                continue
            descriptor = self.descriptor(entry.name)
            if descriptor.is_deployed():
                descriptors.append(descriptor)
        return descriptors

    def list_available_services(self) -> List[str]:
        """Return names of services that have a source compose definition."""
        if not self.source_root.is_dir():
            return []
        return [
            entry.name
            for entry in sorted(self.source_root.iterdir())
            if entry.is_dir()
            and _NAME_RE.match(entry.name)
            and (entry / constants.COMPOSE_FILENAME).is_file()
        ]


def validate_service_name(name: str) -> str:
    if not name or not _NAME_RE.match(name):
        raise ConfigurationError(f"Invalid service name: {name!r}")
    return name
