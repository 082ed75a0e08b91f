from __future__ import annotations

import socket
import time

import pytest
from zeroconf import ServiceInfo, ServiceStateChange

from openbio_desktop import discovery
from openbio_desktop.discovery import (
    SERVICE_TYPE,
    DiscoveryBroadcaster,
    DiscoveryScanner,
    advertisement_hostname,
    peer_from_service_info,
)
from openbio_desktop.errors import DiscoveryError
from openbio_desktop.models import DiscoveredPeer

pytestmark = pytest.mark.core_headless


def record(name: str, ip: str = None, port: int = 3000, ipv6: str = None) -> ServiceInfo:
    addresses = []
    if ip:
        addresses.append(socket.inet_aton(ip))
    if ipv6:
        addresses.append(socket.inet_pton(socket.AF_INET6, ipv6))
    return ServiceInfo(SERVICE_TYPE, f"{name}.{SERVICE_TYPE}", addresses=addresses, port=port, properties={})


class FakeZeroconf:
    def __init__(self, records=()):
        self.records = {info.name: info for info in records}
        self.registered = []
        self.unregistered = []
        self.closed = False
        self.register_error = None

    def get_service_info(self, type_, name, timeout=3000):
        return self.records.get(name)

    def register_service(self, info):
        if self.register_error:
            raise self.register_error
        self.registered.append(info)

    def unregister_service(self, info):
        self.unregistered.append(info)

    def close(self):
        self.closed = True


class FakeBrowser:
    """Announces a fixed sequence of names as soon as browsing starts."""

    def __init__(self, names):
        self.names = names
        self.cancelled = False

    def __call__(self, zc, service_type, handlers):
        assert service_type == SERVICE_TYPE
        for name in self.names:
            for handler in handlers:
                handler(zeroconf=zc, service_type=service_type, name=name, state_change=ServiceStateChange.Added)
        return self

    def cancel(self):
        self.cancelled = True


def scan_with(records, announced=None, timeout=0.3):
    zc = FakeZeroconf(records)
    browser = FakeBrowser(announced if announced is not None else [r.name for r in records])
    scanner = DiscoveryScanner(zeroconf_factory=lambda: zc, browser_factory=browser)
    peers = scanner.scan(timeout=timeout, poll_interval=0.01)
    return peers, zc, browser


def test_advertisement_hostname():
    assert advertisement_hostname("Smith Lab") == "smith-lab.local."
    assert advertisement_hostname("Core Facility B") == "core-facility-b.local."


def test_peer_from_service_info_strips_service_type():
    peer = peer_from_service_info(record("Smith Lab", "10.0.0.5", 3001))
    assert peer == DiscoveredPeer(name="Smith Lab", address="http://10.0.0.5:3001")


def test_peer_from_service_info_prefers_ipv4():
    peer = peer_from_service_info(record("Dual", "192.168.1.7", 3000, ipv6="fe80::1"))
    assert peer.address == "http://192.168.1.7:3000"


def test_peer_without_ipv4_is_skipped():
    assert peer_from_service_info(record("Six Only", ipv6="fe80::1")) is None


def test_scan_sorts_by_name():
    peers, _, _ = scan_with([record("Zeta", "10.0.0.2"), record("Alpha", "10.0.0.1")])
    assert [p.name for p in peers] == ["Alpha", "Zeta"]


def test_scan_dedupes_by_address():
    peers, _, _ = scan_with([record("Lab One", "10.0.0.5"), record("Lab Two", "10.0.0.5")])
    assert peers == [DiscoveredPeer(name="Lab One", address="http://10.0.0.5:3000")]


def test_scan_dedupes_non_adjacent_duplicates():
    peers, _, _ = scan_with([
        record("Alpha", "10.0.0.5"),
        record("Beta", "10.0.0.6"),
        record("Gamma", "10.0.0.5"),
    ])
    assert [p.name for p in peers] == ["Alpha", "Beta"]


def test_scan_skips_unresolved_and_ipv6_only_records():
    peers, _, _ = scan_with(
        [record("Good", "10.0.0.1"), record("Six", ipv6="fe80::1")],
        announced=[f"Good.{SERVICE_TYPE}", f"Six.{SERVICE_TYPE}", f"Ghost.{SERVICE_TYPE}"],
    )
    assert [p.name for p in peers] == ["Good"]


def test_scan_with_no_peers_returns_empty_and_cleans_up():
    peers, zc, browser = scan_with([], timeout=0.05)
    assert peers == []
    assert zc.closed
    assert browser.cancelled


def test_scan_respects_deadline():
    ticks = iter([0.0, 0.0, 10.0])
    zc = FakeZeroconf([record("Alpha", "10.0.0.1")])
    scanner = DiscoveryScanner(
        zeroconf_factory=lambda: zc,
        browser_factory=FakeBrowser([]),
        clock=lambda: next(ticks),
    )
    assert scanner.scan(timeout=5.0, poll_interval=0.01) == []


def test_scan_daemon_failure_is_raised():
    def broken():
        raise OSError("no multicast")

    scanner = DiscoveryScanner(zeroconf_factory=broken)
    with pytest.raises(DiscoveryError, match="mDNS daemon"):
        scanner.scan(timeout=0.1)


def test_scan_browse_failure_is_raised_and_daemon_closed():
    zc = FakeZeroconf()

    def broken_browser(*args, **kwargs):
        raise OSError("browse failed")

    scanner = DiscoveryScanner(zeroconf_factory=lambda: zc, browser_factory=broken_browser)
    with pytest.raises(DiscoveryError, match="browse"):
        scanner.scan(timeout=0.1)
    assert zc.closed


def test_scan_closes_daemon_when_resolution_raises():
    class ExplodingZeroconf(FakeZeroconf):
        def get_service_info(self, type_, name, timeout=3000):
            raise RuntimeError("resolver crashed")

    zc = ExplodingZeroconf()
    browser = FakeBrowser([f"Alpha.{SERVICE_TYPE}"])
    scanner = DiscoveryScanner(zeroconf_factory=lambda: zc, browser_factory=browser)
    with pytest.raises(RuntimeError):
        scanner.scan(timeout=0.5, poll_interval=0.01)
    assert zc.closed
    assert browser.cancelled


def test_broadcaster_registers_record_and_handle_withdraws_it():
    zc = FakeZeroconf()
    broadcaster = DiscoveryBroadcaster(zeroconf_factory=lambda: zc, host_ip_resolver=lambda: "192.168.1.20")

    handle = broadcaster.start("Smith Lab", 3001)

    [info] = zc.registered
    assert info.type == SERVICE_TYPE
    assert info.name == f"Smith Lab.{SERVICE_TYPE}"
    assert info.server == "smith-lab.local."
    assert info.port == 3001
    assert info.parsed_addresses() == ["192.168.1.20"]
    assert not zc.closed

    handle.close()
    handle.close()
    assert zc.unregistered == [info]
    assert zc.closed


def test_broadcaster_handle_as_context_manager():
    zc = FakeZeroconf()
    broadcaster = DiscoveryBroadcaster(zeroconf_factory=lambda: zc, host_ip_resolver=lambda: "10.0.0.2")
    with broadcaster.start("Lab", 3000):
        assert len(zc.registered) == 1
    assert zc.closed


def test_broadcaster_register_failure_is_raised():
    zc = FakeZeroconf()
    zc.register_error = OSError("multicast unavailable")
    broadcaster = DiscoveryBroadcaster(zeroconf_factory=lambda: zc, host_ip_resolver=lambda: "10.0.0.2")
    with pytest.raises(DiscoveryError, match="register"):
        broadcaster.start("Lab", 3000)
    assert zc.closed


def test_advertised_ip_falls_back_to_loopback(monkeypatch):
    class NoRouteSocket:
        def __init__(self, *args):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def connect(self, address):
            raise OSError("network unreachable")

    monkeypatch.setattr(discovery.socket, "socket", NoRouteSocket)
    assert discovery.get_advertised_host_ip() == "127.0.0.1"


def test_scan_limits_resolution_to_remaining_window():
    class SlowZeroconf(FakeZeroconf):
        def __init__(self):
            super().__init__()
            self.timeouts = []

        def get_service_info(self, type_, name, timeout=3000):
            self.timeouts.append(timeout)
            time.sleep(timeout / 1000)
            return None

    zc = SlowZeroconf()
    scanner = DiscoveryScanner(zeroconf_factory=lambda: zc, browser_factory=FakeBrowser([f"Late.{SERVICE_TYPE}"]))

    started = time.monotonic()
    assert scanner.scan(timeout=0.3, poll_interval=0.01) == []
    elapsed = time.monotonic() - started

    assert zc.timeouts and all(t <= 300 for t in zc.timeouts)
    assert elapsed < 0.8


def test_broadcaster_rejects_overlong_lab_name_without_opening_daemon():
    created = []

    def factory():
        created.append(FakeZeroconf())
        return created[-1]

    broadcaster = DiscoveryBroadcaster(zeroconf_factory=factory, host_ip_resolver=lambda: "10.0.0.2")
    with pytest.raises(DiscoveryError, match="Invalid mDNS record"):
        broadcaster.start("L" * 70, 3000)
    assert created == []
