import asyncio
import logging
import threading
import time
from typing import Callable, Optional

import uvicorn

from openbio_desktop.backing_service import create_app
from openbio_desktop.errors import ServiceStartError

logger = logging.getLogger(__name__)

SERVICE_HOST = "127.0.0.1"


class ServiceHandle:
    """
    A running embedded service: its port, storage and the thread serving it.
    """

    def __init__(self, port: int, storage_locator: str):
        self.port = port
        self.storage_locator = storage_locator
        self.error: Optional[BaseException] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()
        self._stop_requested = False

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_started(self) -> bool:
        return self._server is not None and self._server.started

    def wait_until_started(self, timeout: float) -> None:
        """
        Block until the service accepts connections.
        Raises ServiceStartError when it exits first or the timeout passes.
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.is_started():
                return
            if self._finished.is_set():
                raise ServiceStartError(
                    f"Data service on port {self.port} exited during startup: {self.error or 'unknown error'}"
                )
            time.sleep(0.05)
        raise ServiceStartError(f"Data service on port {self.port} did not start within {timeout:g}s")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_requested = True
        if self._server is not None:
            self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Data service on port %d did not stop within %.1fs", self.port, timeout)
        logger.info("Data service on port %d stopped", self.port)

    def _serve(self, apply_migrations: bool) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            app = create_app(self.storage_locator, apply_migrations)
            config = uvicorn.Config(
                app,
                host=SERVICE_HOST,
                port=self.port,
                log_level="warning",
                access_log=False,
            )
            self._server = uvicorn.Server(config)
            if self._stop_requested:
                self._server.should_exit = True
            loop.run_until_complete(self._server.serve())
        # uvicorn exits with SystemExit when the port cannot be bound
        except (Exception, SystemExit) as e:
            self.error = e
            logger.error("Data service on port %d failed: %s", self.port, e)
        finally:
            loop.close()
            self._finished.set()


def start_embedded_service(port: int, storage_locator: str, apply_migrations: bool) -> ServiceHandle:
    """
    Serve the data API on a dedicated thread with its own event loop.
    Returns as soon as the thread is running.
    """
    handle = ServiceHandle(port, storage_locator)
    handle._thread = threading.Thread(
        target=handle._serve,
        args=(apply_migrations,),
        name=f"openbio-service-{port}",
        daemon=True,
    )
    handle._thread.start()
    return handle


ServiceStarter = Callable[[int, str, bool], ServiceHandle]


class ServiceSupervisor:
    """Starts the embedded data service. Callers own the returned handle."""

    def __init__(self, starter: ServiceStarter = start_embedded_service):
        self.starter = starter

    def spawn(self, port: int, storage_locator: str, apply_migrations: bool = True) -> ServiceHandle:
        logger.info("Starting data service on %s:%d (migrations=%s)", SERVICE_HOST, port, apply_migrations)
        return self.starter(port, storage_locator, apply_migrations)
