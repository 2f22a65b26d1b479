"""FastAPI control surface for the long-running watcher daemon."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .deploy import StateDeployer
from .envfile import read_env
from .errors import ConfigurationError, ExternalToolError, FilesystemError, PibootError
from .fleet import FleetUpdater
from .models import (
    DeployResult,
    FleetUpdateRun,
    ServiceStatus,
    StatusResponse,
    WatcherState,
)
from .runtime.docker import ComposeController
from .storage import ServiceStore
from .watch.manager import WatcherManager

log = logging.getLogger(__name__)


class WatcherToggle(BaseModel):
    service: str
    changed: bool
    state: WatcherState


def create_app(
    store: ServiceStore,
    controller: ComposeController,
    manager: WatcherManager,
    deployer: StateDeployer,
    updater: FleetUpdater,
    watch_on_start: Optional[List[str]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        for name in watch_on_start or []:
            try:
                manager.enable(name)
            except PibootError as exc:
                log.error("[%s] Cannot start watcher: %s", name, exc)
        try:
            yield
        finally:
            manager.disable_all()

    app = FastAPI(title="piboot", version="0.1.0", lifespan=lifespan)

    def _service_status(name: str) -> ServiceStatus:
        descriptor = store.descriptor(name)
        tag = read_env(descriptor.env_path).get(manager.settings.image_tag_key)
        return ServiceStatus(
            name=name,
            running=controller.status(descriptor.compose_path),
            watcher=manager.status(name),
            image_tag=tag,
        )

    def _require_deployed(name: str) -> None:
        try:
            store.require_deployed(name)
        except ConfigurationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/api/services", response_model=StatusResponse)
    def list_services() -> StatusResponse:
        """Return every deployed service with container and watcher state."""
        return StatusResponse(
            services=[_service_status(d.name) for d in store.list_known_services()]
        )

    @app.get("/api/services/{name}", response_model=ServiceStatus)
    def get_service(name: str) -> ServiceStatus:
        _require_deployed(name)
        return _service_status(name)

    @app.put("/api/services/{name}/watcher", response_model=WatcherToggle)
    def enable_watcher(name: str) -> WatcherToggle:
        """Start watching a service; repeated calls are no-ops."""
        _require_deployed(name)
        try:
            changed = manager.enable(name)
        except PibootError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return WatcherToggle(service=name, changed=changed, state=manager.status(name))

    @app.delete("/api/services/{name}/watcher", response_model=WatcherToggle)
    def disable_watcher(name: str) -> WatcherToggle:
        _require_deployed(name)
        changed = manager.disable(name)
        return WatcherToggle(service=name, changed=changed, state=manager.status(name))

    @app.post("/api/services/{name}/deploy", response_model=DeployResult)
    def deploy_service(name: str) -> DeployResult:
        """Copy the source definition of a service into the live tree."""
        try:
            return deployer.deploy(store.descriptor(name))
        except ConfigurationError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except FilesystemError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.post("/api/update", response_model=FleetUpdateRun)
    def run_update() -> FleetUpdateRun:
        try:
            return updater.run_update()
        except ExternalToolError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    return app
