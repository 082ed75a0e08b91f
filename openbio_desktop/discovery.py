"""
Hub advertisement and discovery over mDNS.

A hub registers one `_openbio._tcp.local.` record for as long as its
BroadcastHandle is open. Spokes run a bounded scan to list the hubs on the
local network.
"""
import logging
import queue
import socket
import time
from typing import Callable, List, Optional

from zeroconf import (
    Error as ZeroconfError,
    IPVersion,
    ServiceBrowser,
    ServiceInfo,
    ServiceStateChange,
    Zeroconf,
)

from openbio_desktop.errors import DiscoveryError
from openbio_desktop.models import DiscoveredPeer

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_openbio._tcp.local."
RESOLVE_TIMEOUT_MS = 1000
# DNS labels are limited to 63 bytes
MAX_LABEL_BYTES = 63


def advertisement_hostname(lab_name: str) -> str:
    return f"{lab_name.replace(' ', '-').lower()}.local."


def get_advertised_host_ip() -> str:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as tmp:
            tmp.connect(("8.8.8.8", 80))
            return tmp.getsockname()[0]
    except OSError:
        logger.exception("Failed to determine advertised host IP")
        return "127.0.0.1"


def peer_from_service_info(info: ServiceInfo) -> Optional[DiscoveredPeer]:
    """Build a peer from a resolved record; records without IPv4 are skipped."""
    addresses = info.parsed_addresses(IPVersion.V4Only)
    if not addresses or not info.port:
        return None
    name = info.name
    suffix = f".{SERVICE_TYPE}"
    if name.endswith(suffix):
        name = name[:-len(suffix)]
    return DiscoveredPeer(name=name, address=f"http://{addresses[0]}:{info.port}")


def sort_and_dedupe(peers: List[DiscoveredPeer]) -> List[DiscoveredPeer]:
    """Order by name, keeping the first peer seen for each address."""
    seen = set()
    result = []
    for peer in sorted(peers, key=lambda p: p.name):
        if peer.address in seen:
            continue
        seen.add(peer.address)
        result.append(peer)
    return result


class BroadcastHandle:
    """An active advertisement. Closing it withdraws the record."""

    def __init__(self, zeroconf: Zeroconf, info: ServiceInfo):
        self.zeroconf = zeroconf
        self.info = info
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.zeroconf.unregister_service(self.info)
        except (OSError, ZeroconfError) as e:
            logger.warning("Failed to unregister mDNS service %s: %s", self.info.name, e)
        finally:
            self.zeroconf.close()
        logger.info("mDNS: Stopped broadcasting '%s'", self.info.name)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class DiscoveryBroadcaster:
    def __init__(
        self,
        zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
        host_ip_resolver: Callable[[], str] = get_advertised_host_ip,
    ):
        self.zeroconf_factory = zeroconf_factory
        self.host_ip_resolver = host_ip_resolver

    def start(self, lab_name: str, port: int) -> BroadcastHandle:
        """
        Advertise this hub under `lab_name`. The mDNS daemon keeps the record
        alive on its own thread until the returned handle is closed.
        """
        try:
            info = ServiceInfo(
                SERVICE_TYPE,
                f"{lab_name}.{SERVICE_TYPE}",
                addresses=[socket.inet_aton(self.host_ip_resolver())],
                port=port,
                properties={},
                server=advertisement_hostname(lab_name),
            )
        except (OSError, ZeroconfError) as e:
            raise DiscoveryError(f"Invalid mDNS record for '{lab_name}': {e}") from e

        try:
            zc = self.zeroconf_factory()
        except (OSError, ZeroconfError) as e:
            raise DiscoveryError(f"Failed to create mDNS daemon: {e}") from e

        try:
            zc.register_service(info)
        except (OSError, ZeroconfError) as e:
            zc.close()
            raise DiscoveryError(f"Failed to register mDNS service: {e}") from e

        logger.info("mDNS: Broadcasting '%s' on port %d", lab_name, port)
        return BroadcastHandle(zc, info)


class DiscoveryScanner:
    def __init__(
        self,
        zeroconf_factory: Callable[[], Zeroconf] = Zeroconf,
        browser_factory: Callable[..., ServiceBrowser] = ServiceBrowser,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.zeroconf_factory = zeroconf_factory
        self.browser_factory = browser_factory
        self.clock = clock

    def scan(self, timeout: float = 5.0, poll_interval: float = 0.1) -> List[DiscoveredPeer]:
        """
        Browse for hubs until `timeout` seconds have passed.

        Returns the resolved hubs sorted by name, one per address. The mDNS
        daemon is shut down before returning, whatever happens.
        """
        try:
            zc = self.zeroconf_factory()
        except (OSError, ZeroconfError) as e:
            raise DiscoveryError(f"Failed to create mDNS daemon: {e}") from e

        found: "queue.Queue[str]" = queue.Queue()

        def on_service_state_change(zeroconf, service_type, name, state_change):
            if state_change in (ServiceStateChange.Added, ServiceStateChange.Updated):
                found.put(name)

        peers: List[DiscoveredPeer] = []
        browser = None
        try:
            try:
                browser = self.browser_factory(zc, SERVICE_TYPE, handlers=[on_service_state_change])
            except (OSError, ZeroconfError) as e:
                raise DiscoveryError(f"Failed to start mDNS browse: {e}") from e

            logger.info("mDNS: Scanning for OpenBio hubs...")
            deadline = self.clock() + timeout
            while self.clock() < deadline:
                try:
                    name = found.get(timeout=poll_interval)
                except queue.Empty:
                    continue

                remaining_ms = int((deadline - self.clock()) * 1000)
                if remaining_ms <= 0:
                    break
                info = zc.get_service_info(
                    SERVICE_TYPE, name, timeout=min(RESOLVE_TIMEOUT_MS, remaining_ms)
                )
                if info is None:
                    continue
                peer = peer_from_service_info(info)
                if peer is None:
                    logger.debug("mDNS: Skipping %s, no IPv4 address", name)
                    continue
                logger.info("mDNS: Found hub '%s' at %s", peer.name, peer.address)
                peers.append(peer)
        finally:
            if browser is not None:
                browser.cancel()
            zc.close()

        hubs = sort_and_dedupe(peers)
        logger.info("mDNS: Scan complete, found %d hub(s)", len(hubs))
        return hubs
