import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from openbio_desktop import __version__
from openbio_desktop.config import settings
from openbio_desktop.config_store import ConfigStore
from openbio_desktop.database import create_session_factory
from openbio_desktop.errors import ConfigStoreError, DiscoveryError, SetupError
from openbio_desktop.hardware_fingerprint import generate_server_id, get_system_info
from openbio_desktop.license_client import LicenseCache, LicenseClient, LicenseValidator
from openbio_desktop.models import (
    CONFIG_EVENT_NAME,
    ConfigEvent,
    DeploymentConfig,
    DiscoveredPeer,
    HealthCheckResponse,
    LicenseActivationRequest,
    LicenseCheckResult,
    SetupRequest,
    SetupStatusResponse,
    TrialRequest,
    TrialResult,
)
from openbio_desktop.orchestrator import Orchestrator
from openbio_desktop.paths import configure_logging, get_license_cache_url

logger = logging.getLogger(__name__)


class ConfigEventLog:
    """Keeps the most recent config notification for the UI to pick up."""

    def __init__(self):
        self.latest: Optional[ConfigEvent] = None

    def record(self, event: ConfigEvent) -> None:
        self.latest = event
        logger.info("%s %s", CONFIG_EVENT_NAME, event.model_dump_json(exclude_none=True))


def build_orchestrator(notify: Callable[[ConfigEvent], None]) -> Orchestrator:
    cache = LicenseCache(create_session_factory(get_license_cache_url()))
    license_client = LicenseClient(LicenseValidator(), cache, generate_server_id())
    return Orchestrator(ConfigStore(), license_client, notify)


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_event_log(request: Request) -> ConfigEventLog:
    return request.app.state.events


def create_app(
    orchestrator_factory: Callable[[Callable[[ConfigEvent], None]], Orchestrator] = build_orchestrator,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        events = ConfigEventLog()
        orchestrator = orchestrator_factory(events.record)
        app.state.events = events
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        try:
            yield
        finally:
            await orchestrator.shutdown()

    app = FastAPI(
        title="OpenBio Desktop Control API",
        description="Deployment setup, hub discovery and licensing for the OpenBio desktop shell",
        version=__version__,
        lifespan=lifespan,
    )

    # The UI shell is served from its own origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/config", response_model=DeploymentConfig)
    async def get_config(orchestrator: Orchestrator = Depends(get_orchestrator)):
        """
        Return the configuration the instance is running with.
        """
        return orchestrator.config

    @app.post("/api/config", response_model=ConfigEvent)
    async def save_config(request: SetupRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
        """
        Complete setup with a new deployment configuration.

        For hub and enterprise modes the license key (or the cached license)
        is validated before anything is saved or started.
        """
        try:
            return await orchestrator.apply(request.config, request.licenseKey)
        except SetupError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ConfigStoreError as e:
            raise HTTPException(status_code=500, detail=str(e))

    @app.get("/api/setup/needed", response_model=SetupStatusResponse)
    async def needs_setup(orchestrator: Orchestrator = Depends(get_orchestrator)):
        return {"needsSetup": orchestrator.needs_setup()}

    @app.get("/api/config/event", response_model=ConfigEvent)
    async def latest_config_event(events: ConfigEventLog = Depends(get_event_log)):
        """
        Most recent config notification (effective API URL and mode).
        """
        if events.latest is None:
            raise HTTPException(status_code=404, detail="No configuration event yet")
        return events.latest

    @app.get("/api/hubs/scan", response_model=List[DiscoveredPeer])
    async def scan_for_hubs(orchestrator: Orchestrator = Depends(get_orchestrator)):
        """
        Scan the local network for hubs. Blocks for the scan window.
        """
        try:
            return await orchestrator.scan_for_hubs()
        except DiscoveryError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.post("/api/license/validate", response_model=LicenseCheckResult)
    async def validate_license(
        request: LicenseActivationRequest,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ):
        result = await orchestrator.license_client.check_key(request.licenseKey)
        if not result.valid:
            raise HTTPException(status_code=400, detail=result.reason)
        return result

    @app.post("/api/license/trial", response_model=TrialResult)
    async def start_trial(request: TrialRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
        result = await orchestrator.license_client.start_trial(request.email, request.tier)
        if not result.success:
            raise HTTPException(status_code=400, detail=result.error)
        return result

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
        return {
            "status": "healthy",
            "service": "openbio-desktop",
            "version": __version__,
            "mode": orchestrator.mode,
            "serverId": orchestrator.license_client.server_id,
            "systemInfo": get_system_info(),
        }

    return app


app = create_app()


def run() -> None:
    configure_logging()
    uvicorn.run(app, host=settings.CONTROL_HOST, port=settings.CONTROL_PORT, log_config=None)


if __name__ == "__main__":
    run()
