"""
Best-effort machine identification.

The server id sent with license validations is a platform identifier read
from the OS. It is not a secret and must not be treated as one.
"""
import logging
import platform
import subprocess
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import psutil

logger = logging.getLogger(__name__)

UNKNOWN_SERVER_ID = "unknown"

LINUX_ID_FILES = (
    Path("/etc/machine-id"),
    Path("/var/lib/dbus/machine-id"),
    Path("/sys/class/dmi/id/product_uuid"),
)


class MachineIdProvider:
    """Reads one platform identifier. Returns None when it is unavailable."""

    def read(self) -> Optional[str]:
        raise NotImplementedError


class FileMachineIdProvider(MachineIdProvider):
    def __init__(self, paths: Iterable[Path] = LINUX_ID_FILES):
        self.paths = [Path(p) for p in paths]

    def read(self) -> Optional[str]:
        for path in self.paths:
            try:
                value = path.read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if value:
                return value
        return None


class WindowsRegistryProvider(MachineIdProvider):
    KEY = r"SOFTWARE\Microsoft\Cryptography"

    def read(self) -> Optional[str]:
        try:
            import winreg
        except ImportError:
            return None
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, self.KEY) as key:
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
        except OSError:
            return None
        return str(value).strip() or None


class MacPlatformUUIDProvider(MachineIdProvider):
    # IOKit has no stdlib binding, so this is the one provider that shells out.
    COMMAND = ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"]

    def read(self) -> Optional[str]:
        try:
            output = subprocess.run(
                self.COMMAND, capture_output=True, text=True, timeout=5, check=False
            ).stdout
        except (OSError, subprocess.SubprocessError):
            return None
        for line in output.splitlines():
            if "IOPlatformUUID" in line:
                parts = line.split('"')
                if len(parts) > 3 and parts[3].strip():
                    return parts[3].strip()
        return None


def default_providers(system: Optional[str] = None) -> List[MachineIdProvider]:
    system = system or sys.platform
    if system.startswith("win"):
        return [WindowsRegistryProvider()]
    if system == "darwin":
        return [MacPlatformUUIDProvider()]
    return [FileMachineIdProvider()]


def generate_server_id(providers: Optional[Sequence[MachineIdProvider]] = None) -> str:
    """
    Return the first identifier any provider yields, or UNKNOWN_SERVER_ID.
    """
    for provider in providers if providers is not None else default_providers():
        try:
            value = provider.read()
        except Exception:
            logger.exception("Machine id provider %s failed", type(provider).__name__)
            continue
        if value:
            return value

    logger.info("No machine identifier available, using '%s'", UNKNOWN_SERVER_ID)
    return UNKNOWN_SERVER_ID


def get_system_info() -> dict:
    """
    Collect system information for the health report.
    """
    return {
        "os_platform": platform.system(),
        "os_release": platform.release(),
        "cpu_count": psutil.cpu_count(logical=True),
        "total_memory_gb": round(psutil.virtual_memory().total / (1024**3), 2),
        "hostname": platform.node(),
        "architecture": platform.machine()
    }
