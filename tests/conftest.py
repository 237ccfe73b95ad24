"""Shared fakes for reconciler and watcher tests."""

import threading
import time
from typing import Dict, Iterator, List, Optional, Set, Tuple

import pytest

from technitium_companion.config import Config, HostnameFilter
from technitium_companion.health import MetricsReporter
from technitium_companion.providers import (
    DNSProvider,
    DNSRecord,
    DockerMode,
    PlatformError,
    PlatformEvent,
    TechnitiumAPIError,
    TraefikLabelParser,
    Workload,
    WorkloadKind,
    WorkloadSource,
)
from technitium_companion.syncer import Reconciler

ZONE = "example.com"
TARGET_IP = "10.0.0.10"

# =============================================================================
# Mock DNS Provider
# =============================================================================


class MockDNSProvider(DNSProvider):
    """In-memory DNS provider with call tracking."""

    def __init__(
        self,
        initial_records: Optional[Dict[str, List[str]]] = None,
        failing_hostnames: Optional[Set[str]] = None,
        delay_seconds: float = 0.0,
    ):
        self._records: Dict[str, List[str]] = {
            host: list(ips) for host, ips in (initial_records or {}).items()
        }
        self.failing_hostnames = failing_hostnames or set()
        self.delay_seconds = delay_seconds
        self.get_calls: List[Tuple[str, str]] = []
        self.add_calls: List[Tuple[str, str, str, int]] = []
        self.delete_calls: List[Tuple[str, str, str]] = []
        self._active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "MockDNS"

    def get_records(self, zone: str, hostname: str) -> List[DNSRecord]:
        with self._lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            self.get_calls.append((zone, hostname))
            if hostname in self.failing_hostnames:
                raise TechnitiumAPIError(f"getting records for {hostname}: API error: boom")
            return [
                DNSRecord(name=hostname, type="A", ttl=300, ip_address=ip)
                for ip in self._records.get(hostname, [])
            ]
        finally:
            with self._lock:
                self._active -= 1

    def add_a_record(self, zone: str, hostname: str, ip: str, ttl: int) -> None:
        self.add_calls.append((zone, hostname, ip, ttl))
        self._records.setdefault(hostname, []).append(ip)

    def delete_a_record(self, zone: str, hostname: str, ip: str) -> None:
        self.delete_calls.append((zone, hostname, ip))
        if ip in self._records.get(hostname, []):
            self._records[hostname].remove(ip)

    def answers(self, hostname: str) -> List[str]:
        return list(self._records.get(hostname, []))


# =============================================================================
# Mock Workload Source
# =============================================================================


class MockWorkloadSource(WorkloadSource):
    """Workload source returning a fixed list, optionally failing."""

    def __init__(
        self,
        workloads: Optional[List[Workload]] = None,
        mode: DockerMode = DockerMode.STANDALONE,
        fail: bool = False,
        subscription=None,
    ):
        super().__init__(client=None)
        self.workloads = workloads or []
        self._mode = mode
        self.fail = fail
        self.subscription = subscription
        self.list_calls = 0

    @property
    def mode(self) -> DockerMode:
        return self._mode

    def list_workloads(self) -> List[Workload]:
        self.list_calls += 1
        if self.fail:
            raise PlatformError("listing containers: Cannot connect to the Docker daemon")
        return list(self.workloads)

    def event_filters(self):
        return {"type": "container", "event": ["start", "die", "destroy"]}

    def subscribe(self):
        return self.subscription


# =============================================================================
# Test Helpers
# =============================================================================


def make_workload(name: str, *hostnames: str, kind: WorkloadKind = WorkloadKind.CONTAINER) -> Workload:
    """Create a Workload with one router rule label per hostname."""
    labels = {"traefik.enable": "true"}
    for i, hostname in enumerate(hostnames):
        labels[f"traefik.http.routers.{name}-{i}.rule"] = f"Host(`{hostname}`)"
    return Workload(id=f"{name}-id-0123456789", name=name, labels=labels, kind=kind)


def make_config(
    *, include: str = "", exclude: str = "", dry_run: bool = False, ttl: int = 300
) -> Config:
    return Config(
        technitium_url="http://dns.local:5380",
        technitium_token="secret-token",
        technitium_zone=ZONE,
        target_ip=TARGET_IP,
        ttl=ttl,
        hostname_filter=HostnameFilter.from_strings(include, exclude),
        dry_run=dry_run,
    )


def make_reconciler(
    workloads: Optional[List[Workload]] = None,
    dns: Optional[MockDNSProvider] = None,
    config: Optional[Config] = None,
    source: Optional[MockWorkloadSource] = None,
) -> Tuple[Reconciler, MockDNSProvider, MockWorkloadSource]:
    """Create a reconciler with mocked providers.

    Returns tuple of (reconciler, dns_provider, workload_source) for verification.
    """
    dns = dns or MockDNSProvider()
    source = source or MockWorkloadSource(workloads)
    reconciler = Reconciler(
        config=config or make_config(),
        workload_source=source,
        label_parser=TraefikLabelParser(),
        dns_provider=dns,
        reporter=MetricsReporter(),
    )
    return reconciler, dns, source


@pytest.fixture
def reporter() -> MetricsReporter:
    return MetricsReporter()


# =============================================================================
# Fake Event Subscription
# =============================================================================


class FakeSubscription:
    """Yields canned events, then blocks until closed unless told to end or fail."""

    def __init__(
        self,
        events: List[PlatformEvent],
        *,
        block: bool = True,
        error: Optional[Exception] = None,
    ):
        self.events = events
        self.block = block
        self.error = error
        self.drained = threading.Event()
        self._closed = threading.Event()
        self.close_calls = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self) -> Iterator[PlatformEvent]:
        for event in self.events:
            yield event
        self.drained.set()
        if self.error is not None:
            raise self.error
        if self.block:
            self._closed.wait(timeout=10)

    def close(self) -> None:
        self.close_calls += 1
        self._closed.set()
