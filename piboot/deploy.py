"""State deployer: materialize a service's live compose tree from source."""
from __future__ import annotations

import logging
import os
import select
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TextIO

from . import constants
from .envfile import update_env_key, write_atomic
from .errors import ConfigurationError, DirectoryCreateError, FileWriteError, FilesystemError, SourceMissingError
from .models import DeployResult, ServiceDescriptor
from .storage import ServiceStore

log = logging.getLogger(__name__)

InputFn = Callable[[str, Optional[float]], str]


class StateDeployer:
    """Copies source definitions into the live compose tree idempotently."""

    def __init__(self, store: ServiceStore) -> None:
        self.store = store

    def deploy(self, service: ServiceDescriptor) -> DeployResult:
        result = DeployResult(service=service.name)
        source_compose = self.store.source_compose_path(service.name)
        source_env = self.store.source_env_path(service.name)

        if not source_compose.is_file():
            log.error("[%s] compose.yml not found at %s", service.name, source_compose)
            raise SourceMissingError(
                f"No source compose definition for {service.name} at {source_compose}",
                path=source_compose,
            )

        log.info("[%s] Creating directories", service.name)
        for directory in (service.compose_dir, service.data_path):
            if directory.is_dir():
                continue
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                log.error("[%s] Cannot create %s: %s", service.name, directory, exc)
                raise DirectoryCreateError(
                    f"Cannot create directory {directory}: {exc}", path=directory
                ) from exc
            result.changes.append(f"created {directory}")
        log.info("[%s] Directories ready", service.name)

        log.info("[%s] Deploying compose file", service.name)
        if self._install(source_compose, service.compose_path, constants.COMPOSE_FILE_MODE):
            result.changes.append(f"wrote {service.compose_path}")
        log.info("[%s] Compose file deployed to %s", service.name, service.compose_path)

        if source_env.is_file():
            log.info("[%s] Deploying .env file", service.name)
            if self._install(source_env, service.env_path, constants.ENV_FILE_MODE):
                result.changes.append(f"wrote {service.env_path}")
            log.info("[%s] .env file deployed to %s", service.name, service.env_path)
        else:
            log.warning("[%s] No source .env, skipping", service.name)

        return result

    @staticmethod
    def _install(source: Path, target: Path, mode: int) -> bool:
        """Copy ``source`` over ``target`` unless identical; returns True on write."""
        try:
            content = source.read_bytes()
        except OSError as exc:
            raise FileWriteError(f"Cannot read {source}: {exc}", path=source) from exc
        try:
            if target.is_file() and target.read_bytes() == content:
                os.chmod(target, mode)
                return False
        except OSError as exc:
            raise FileWriteError(f"Cannot update {target}: {exc}", path=target) from exc
        try:
            write_atomic(target, content, mode)
        except FilesystemError as exc:
            raise FileWriteError(str(exc), path=target) from exc
        return True


def select_image_tag(
    service: ServiceDescriptor,
    options: Sequence[str],
    *,
    interactive: Optional[bool] = None,
    timeout: Optional[float] = None,
    key: str = constants.IMAGE_TAG_KEY,
    input_fn: Optional[InputFn] = None,
    output: Optional[TextIO] = None,
) -> str:
    """Choose an image tag for ``service`` and persist it in its env file.

    ``options[0]`` is the default. Attended runs prompt until the answer is
    empty (default) or a case-insensitive prefix of an option; the first
    matching option wins. Unattended runs always take the default, as does a
    prompt that receives no answer within ``timeout`` seconds.
    """
    if not options:
        raise ConfigurationError(f"No image tag options declared for {service.name}")
    default = options[0]
    if interactive is None:
        interactive = sys.stdin.isatty()

    if interactive:
        reader = input_fn or _read_answer
        out = output or sys.stdout
        choices = "/".join(options)
        prompt = f"[?] Image tag for {service.name} ({choices}) [{default}]: "
        while True:
            answer = reader(prompt, timeout).strip()
            tag = match_tag(answer, options)
            if tag is not None:
                break
            out.write(f"Invalid choice {answer!r}; expected one of: {', '.join(options)}\n")
    else:
        tag = default

    update_env_key(service.env_path, key, tag)
    log.info("[%s] Image tag set to %s", service.name, tag)
    return tag


def match_tag(answer: str, options: Sequence[str]) -> Optional[str]:
    """Resolve an answer against ``options``; empty means the default."""
    if not answer:
        return options[0]
    lowered = answer.lower()
    for option in options:
        if option.lower().startswith(lowered):
            return option
    return None


def _read_answer(prompt: str, timeout: Optional[float]) -> str:
    if timeout is None:
        try:
            return input(prompt)
        except EOFError:
            return ""
    sys.stdout.write(prompt)
    sys.stdout.flush()
    ready, _, _ = select.select([sys.stdin], [], [], timeout)
    if not ready:
        sys.stdout.write("\n")
        return ""
    line = sys.stdin.readline()
    return line.rstrip("\n")


def deploy_many(deployer: StateDeployer, store: ServiceStore, names: Sequence[str]) -> List[str]:
    """Deploy several services; returns the names that failed."""
    failed: List[str] = []
    for name in names:
        try:
            deployer.deploy(store.descriptor(name))
        except (ConfigurationError, FilesystemError) as exc:
            log.error("[%s] deploy failed: %s", name, exc)
            failed.append(name)
    return failed
