import asyncio
import logging
from typing import Callable, List, Optional

from openbio_desktop.config import settings
from openbio_desktop.config_store import ConfigStore
from openbio_desktop.discovery import (
    MAX_LABEL_BYTES,
    BroadcastHandle,
    DiscoveryBroadcaster,
    DiscoveryScanner,
)
from openbio_desktop.errors import (
    ConfigStoreError,
    DiscoveryError,
    LicenseError,
    OpenBioError,
    ServiceStartError,
    SetupError,
)
from openbio_desktop.license_client import LicenseClient, requires_license
from openbio_desktop.models import ConfigEvent, DeploymentConfig, DeploymentMode, DiscoveredPeer
from openbio_desktop.paths import get_storage_locator
from openbio_desktop.ports import find_available_port
from openbio_desktop.service_supervisor import ServiceHandle, ServiceSupervisor

logger = logging.getLogger(__name__)

LOCAL_SERVICE_MODES = (DeploymentMode.LOCAL, DeploymentMode.HUB)
REMOTE_MODES = (DeploymentMode.SPOKE, DeploymentMode.ENTERPRISE)


def effective_api_url(config: DeploymentConfig) -> str:
    if config.mode in LOCAL_SERVICE_MODES:
        return f"http://localhost:{config.server_port}"
    if config.mode in REMOTE_MODES:
        return config.api_url or ""
    return ""


def validate_setup(config: DeploymentConfig) -> None:
    """Reject configurations the setup flow must not persist."""
    if config.mode == DeploymentMode.HUB:
        if not (config.lab_name or "").strip():
            raise SetupError("Hub mode requires a lab name")
        if len(config.lab_name.encode("utf-8")) > MAX_LABEL_BYTES:
            raise SetupError(f"Lab name must be at most {MAX_LABEL_BYTES} bytes to be advertised")
    if config.mode in REMOTE_MODES and not (config.api_url or "").strip():
        raise SetupError(f"{config.mode.value.capitalize()} mode requires an API URL")


class Orchestrator:
    """
    Owns the deployment state of this instance and drives the embedded
    service, the hub advertisement and license checks to match it.
    """

    def __init__(
        self,
        store: ConfigStore,
        license_client: LicenseClient,
        notify: Callable[[ConfigEvent], None],
        supervisor: Optional[ServiceSupervisor] = None,
        broadcaster: Optional[DiscoveryBroadcaster] = None,
        scanner: Optional[DiscoveryScanner] = None,
        storage_locator: Optional[str] = None,
        port_finder: Callable[[int], int] = find_available_port,
    ):
        self.store = store
        self.license_client = license_client
        self.notify = notify
        self.supervisor = supervisor or ServiceSupervisor()
        self.broadcaster = broadcaster or DiscoveryBroadcaster()
        self.scanner = scanner or DiscoveryScanner()
        self.storage_locator = storage_locator
        self.port_finder = port_finder

        self.config = DeploymentConfig()
        self.mode = DeploymentMode.UNCONFIGURED
        self.service: Optional[ServiceHandle] = None
        self.broadcast: Optional[BroadcastHandle] = None
        self._lock = asyncio.Lock()

    @property
    def api_url(self) -> str:
        if self.mode == DeploymentMode.UNCONFIGURED:
            return ""
        return effective_api_url(self.config)

    def needs_setup(self) -> bool:
        return not self.store.exists()

    async def start(self) -> ConfigEvent:
        """
        Activate the persisted configuration at process startup. Failures leave
        the instance inactive and are reported in the emitted event.
        """
        async with self._lock:
            config = self.store.load()
            try:
                warning = await self._activate(config, license_key=None, persist=False)
            except OpenBioError as e:
                logger.error("Could not activate %s mode at startup: %s", config.mode.value, e)
                return await self._fail(config, str(e))
            return self._emit(error=warning)

    async def apply(self, config: DeploymentConfig, license_key: Optional[str] = None) -> ConfigEvent:
        """
        Run the setup action: validate, license-check, persist and activate `config`.

        A failed license check or config write leaves the current mode
        running. Any later failure leaves the instance inactive.
        """
        validate_setup(config)
        async with self._lock:
            try:
                warning = await self._activate(config, license_key=license_key, persist=True)
            except (LicenseError, ConfigStoreError):
                raise
            except OpenBioError as e:
                await self._fail(config, str(e))
                raise
            return self._emit(error=warning)

    async def scan_for_hubs(self, timeout: Optional[float] = None) -> List[DiscoveredPeer]:
        return await asyncio.to_thread(
            self.scanner.scan,
            settings.DISCOVERY_SCAN_TIMEOUT if timeout is None else timeout,
            settings.DISCOVERY_POLL_INTERVAL,
        )

    async def shutdown(self) -> None:
        async with self._lock:
            self.license_client.shutdown()
            await self._deactivate()
            self.mode = DeploymentMode.UNCONFIGURED

    async def _activate(
        self, config: DeploymentConfig, license_key: Optional[str], persist: bool
    ) -> Optional[str]:
        """Bring components in line with `config`. Returns a non-fatal warning, if any."""
        if requires_license(config.mode):
            result = await self.license_client.ensure_entitlement(config.mode, license_key)
            if not result.valid:
                raise LicenseError(result.reason or "License validation failed", result.failure)

        config = config.model_copy()
        if persist:
            self.store.save(config)

        if config.mode in LOCAL_SERVICE_MODES:
            config = await self._ensure_service(config)
        else:
            await self._stop_service()

        await self._stop_broadcast()
        warning = None
        if config.mode == DeploymentMode.HUB and not (config.lab_name or "").strip():
            warning = "Hub has no lab name and is not advertised on the network"
            logger.warning(warning)
        elif config.mode == DeploymentMode.HUB:
            try:
                self.broadcast = await asyncio.to_thread(
                    self.broadcaster.start, config.lab_name, config.server_port
                )
            except DiscoveryError as e:
                # The hub still serves; spokes can enter its address by hand.
                logger.error("Hub advertisement failed: %s", e)
                warning = str(e)

        if requires_license(config.mode):
            self.license_client.start_monitor(config.mode, self._on_license_failure)
        else:
            self.license_client.stop_monitor()

        self.config = config
        self.mode = config.mode
        logger.info("Deployment mode is now %s (api=%s)", self.mode.value, self.api_url or "-")
        return warning

    async def _ensure_service(self, config: DeploymentConfig) -> DeploymentConfig:
        storage_locator = self.storage_locator or get_storage_locator()
        current = self.service
        if (
            current is not None
            and current.is_running()
            and current.port == config.server_port
            and current.storage_locator == storage_locator
        ):
            return config

        await self._stop_service()

        preferred = config.server_port
        port = await asyncio.to_thread(self.port_finder, preferred)
        if port != preferred:
            logger.info("Preferred port %d busy, using %d", preferred, port)
            config = config.model_copy(update={"server_port": port})
            try:
                self.store.save(config)
            except ConfigStoreError as e:
                logger.warning("Could not persist port %d: %s", port, e)

        handle = self.supervisor.spawn(port, storage_locator, True)
        try:
            await asyncio.to_thread(handle.wait_until_started, settings.SERVICE_START_TIMEOUT)
        except ServiceStartError as e:
            await asyncio.to_thread(handle.stop)
            raise SetupError(str(e)) from e
        self.service = handle
        return config

    async def _stop_service(self) -> None:
        if self.service is not None:
            handle, self.service = self.service, None
            await asyncio.to_thread(handle.stop)

    async def _stop_broadcast(self) -> None:
        if self.broadcast is not None:
            handle, self.broadcast = self.broadcast, None
            await asyncio.to_thread(handle.close)

    async def _deactivate(self) -> None:
        self.license_client.stop_monitor()
        await self._stop_broadcast()
        await self._stop_service()

    async def _fail(self, config: DeploymentConfig, reason: str) -> ConfigEvent:
        await self._deactivate()
        self.config = config
        self.mode = DeploymentMode.UNCONFIGURED
        return self._emit(error=reason)

    def _on_license_failure(self, reason: str) -> None:
        self._emit(error=f"License re-validation failed: {reason}")

    def _emit(self, error: Optional[str] = None) -> ConfigEvent:
        event = ConfigEvent(apiUrl=self.api_url, mode=self.mode, error=error)
        try:
            self.notify(event)
        except Exception:
            logger.exception("Config listener failed")
        return event
