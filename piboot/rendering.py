"""Rendering helpers for generated init scripts and periodic jobs."""
from __future__ import annotations

import shlex
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template
from pydantic import BaseModel

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"


class WatcherUnitContext(BaseModel):
    """Values substituted into a ``compose-watch-<service>`` init script."""

    service_name: str
    watcher_name: str
    command: list[str]
    log_file: Path


class UpdateJobContext(BaseModel):
    """Values substituted into the daily fleet update job."""

    command: list[str]
    log_file: Path


def shell_quote(value: object) -> str:
    return shlex.quote(str(value))


def shell_join(values: list[object]) -> str:
    return " ".join(shell_quote(value) for value in values)


class ScriptRenderer:
    """Renders host scripts from Jinja templates with shell-quoted values."""

    def __init__(self, template_dir: Optional[Path] = None) -> None:
        self.template_dir = template_dir or TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self.env.filters["shquote"] = shell_quote
        self.env.filters["shjoin"] = shell_join

    def _template(self, name: str) -> Template:
        return self.env.get_template(name)

    def render_watcher_unit(self, context: WatcherUnitContext) -> str:
        return self._template("compose-watch.openrc.j2").render(**context.model_dump())

    def render_update_job(self, context: UpdateJobContext) -> str:
        return self._template("docker-update.periodic.j2").render(**context.model_dump())
