"""Providers consumed by the reconciler.

DNS provider:
    - technitium: Technitium DNS Server HTTP API (A records only)

Workload sources:
    - swarm: Docker Swarm services (requires a manager node)
    - standalone: running Docker containers

Label parsing:
    - traefik: ``traefik.http.routers.<name>.rule`` labels
"""

from __future__ import annotations

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional

import docker
import requests
from docker.errors import DockerException

from technitium_companion.health import MetricsReporter

logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class CompanionError(Exception):
    """Base class for errors raised by technitium-companion components."""


class PlatformError(CompanionError):
    """The Docker platform could not be queried."""


class TechnitiumAPIError(CompanionError):
    """A Technitium API call failed. The message carries the remote error verbatim."""


class SubscriptionError(CompanionError):
    """The Docker event stream failed or ended unexpectedly."""


# =============================================================================
# Data Classes
# =============================================================================


class DockerMode(Enum):
    """Docker runtime topology."""

    SWARM = "swarm"
    STANDALONE = "standalone"


class WorkloadKind(Enum):
    SERVICE = "service"
    CONTAINER = "container"


@dataclass(frozen=True)
class Workload:
    """A Swarm service or a standalone container, presented the same way."""

    id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    kind: WorkloadKind = WorkloadKind.CONTAINER


@dataclass(frozen=True)
class DNSRecord:
    """A record returned by the Technitium records API."""

    name: str
    type: str
    ttl: int = 0
    ip_address: str = ""
    disabled: bool = False


@dataclass(frozen=True)
class PlatformEvent:
    """A Docker lifecycle event."""

    type: str
    action: str
    actor_id: str = ""
    attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def actor_name(self) -> str:
        return self.attributes.get("name") or self.actor_id[:12]

    @classmethod
    def from_docker(cls, raw: Mapping[str, Any]) -> PlatformEvent:
        actor = raw.get("Actor") or {}
        return cls(
            type=str(raw.get("Type") or ""),
            action=str(raw.get("Action") or raw.get("status") or ""),
            actor_id=str(actor.get("ID") or raw.get("id") or ""),
            attributes=dict(actor.get("Attributes") or {}),
        )


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_records(self, zone: str, hostname: str) -> List[DNSRecord]:
        """Get all records for a hostname in a zone."""
        pass

    @abstractmethod
    def add_a_record(self, zone: str, hostname: str, ip: str, ttl: int) -> None:
        """Add an A record."""
        pass

    @abstractmethod
    def delete_a_record(self, zone: str, hostname: str, ip: str) -> None:
        """Delete an A record."""
        pass

    def has_a_record(self, zone: str, hostname: str, ip: str) -> bool:
        """Check whether an A record with exactly this address exists."""
        for record in self.get_records(zone, hostname):
            if record.type == "A" and record.ip_address == ip:
                return True
        return False

    def ensure_a_record(self, zone: str, hostname: str, ip: str, ttl: int) -> bool:
        """Create the A record unless it already exists. Returns True if created."""
        if self.has_a_record(zone, hostname, ip):
            logger.debug(f"A record already exists: {hostname} -> {ip}")
            return False
        self.add_a_record(zone, hostname, ip, ttl)
        return True


class TechnitiumDNSProvider(DNSProvider):
    """Technitium DNS Server provider implementation.

    Every call is an HTTP GET with query-string parameters and an API token.
    Responses are wrapped in ``{"status": "ok" | "error", "errorMessage": ...,
    "response": {...}}``.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        timeout_seconds: float = 30.0,
        reporter: Optional[MetricsReporter] = None,
    ):
        self._url = url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds
        self._reporter = reporter
        self._session = requests.Session()

    @property
    def name(self) -> str:
        return "Technitium DNS"

    def _request(self, endpoint: str, params: Dict[str, str]) -> Dict[str, Any]:
        start = time.monotonic()
        query = dict(params)
        query["token"] = self._token

        # The token travels in the query string, so only the endpoint is logged.
        logger.debug(f"Technitium API request: {self._url}{endpoint}")

        try:
            try:
                response = self._session.get(
                    f"{self._url}{endpoint}", params=query, timeout=self._timeout
                )
            except requests.exceptions.RequestException as e:
                raise TechnitiumAPIError(f"executing request: {e}") from e

            if response.status_code != 200:
                raise TechnitiumAPIError(
                    f"unexpected status code {response.status_code}: {response.text}"
                )

            try:
                data = response.json()
            except ValueError as e:
                raise TechnitiumAPIError(f"parsing response JSON: {e}") from e

            if not isinstance(data, dict):
                raise TechnitiumAPIError(
                    f"parsing response JSON: expected object, got {type(data).__name__}"
                )
            if data.get("status") == "error":
                raise TechnitiumAPIError(f"API error: {data.get('errorMessage') or ''}")
        except TechnitiumAPIError:
            self._observe(endpoint, "error", start)
            raise

        self._observe(endpoint, "success", start)
        return data

    def _observe(self, endpoint: str, status: str, start: float) -> None:
        if self._reporter is not None:
            self._reporter.record_api_request(endpoint, status, time.monotonic() - start)

    def get_records(self, zone: str, hostname: str) -> List[DNSRecord]:
        try:
            data = self._request("/api/zones/records/get", {"zone": zone, "domain": hostname})
        except TechnitiumAPIError as e:
            raise TechnitiumAPIError(f"getting records for {hostname}: {e}") from e

        payload = data.get("response") or {}
        raw_records = payload.get("records") if isinstance(payload, dict) else None
        if raw_records is None:
            raw_records = []
        if not isinstance(raw_records, list):
            raise TechnitiumAPIError(
                f"parsing records response: expected list, got {type(raw_records).__name__}"
            )

        records: List[DNSRecord] = []
        for r in raw_records:
            if not isinstance(r, dict):
                logger.warning(f"Skipping malformed record: {r}")
                continue
            rdata = r.get("rData") if isinstance(r.get("rData"), dict) else {}
            try:
                ttl = int(r.get("ttl") or 0)
            except (TypeError, ValueError) as e:
                raise TechnitiumAPIError(
                    f"parsing records response: invalid ttl {r.get('ttl')!r} for {hostname}"
                ) from e
            records.append(
                DNSRecord(
                    name=str(r.get("name") or ""),
                    type=str(r.get("type") or ""),
                    ttl=ttl,
                    ip_address=str(rdata.get("ipAddress") or ""),
                    disabled=bool(r.get("disabled", False)),
                )
            )

        logger.debug(f"Retrieved {len(records)} record(s) for {hostname} in zone {zone}")
        return records

    def add_a_record(self, zone: str, hostname: str, ip: str, ttl: int) -> None:
        params = {
            "zone": zone,
            "domain": hostname,
            "type": "A",
            "ipAddress": ip,
            "ttl": str(ttl),
        }
        try:
            self._request("/api/zones/records/add", params)
        except TechnitiumAPIError as e:
            raise TechnitiumAPIError(f"adding A record for {hostname}: {e}") from e
        logger.info(f"Added A record: {hostname} -> {ip} (zone={zone}, ttl={ttl})")

    def delete_a_record(self, zone: str, hostname: str, ip: str) -> None:
        params = {"zone": zone, "domain": hostname, "type": "A", "ipAddress": ip}
        try:
            self._request("/api/zones/records/delete", params)
        except TechnitiumAPIError as e:
            raise TechnitiumAPIError(f"deleting A record for {hostname}: {e}") from e
        logger.info(f"Deleted A record: {hostname} -> {ip} (zone={zone})")


# =============================================================================
# Traefik Label Parsing
# =============================================================================

ROUTER_LABEL_PREFIX = "traefik.http.routers."
ROUTER_RULE_SUFFIX = ".rule"
HOST_RULE_RE = re.compile(r"Host\([`\"']([^`\"']+)[`\"']\)")


def is_router_rule_label(key: str) -> bool:
    """Check if a label key is an HTTP router rule, e.g. traefik.http.routers.app.rule"""
    if not key.startswith(ROUTER_LABEL_PREFIX) or not key.endswith(ROUTER_RULE_SUFFIX):
        return False
    # traefik, http, routers, NAME, rule
    return len(key.split(".")) >= 5


def extract_hosts_from_rule(rule: str) -> List[str]:
    """Extract hostnames from a single Traefik router rule."""
    hosts: List[str] = []
    for match in HOST_RULE_RE.finditer(rule or ""):
        hostname = match.group(1).strip()
        if hostname and hostname not in hosts:
            hosts.append(hostname)
    return hosts


class TraefikLabelParser:
    """Extracts hostnames from Traefik router rule labels."""

    def extract_hosts(self, labels: Optional[Mapping[str, str]]) -> List[str]:
        """Return deduplicated hostnames in label order.

        Only ``traefik.http.routers.<name>.rule`` labels are considered, so TCP
        and UDP routers (``HostSNI``) are ignored.
        """
        hosts: List[str] = []
        for key, value in (labels or {}).items():
            if not is_router_rule_label(key):
                continue
            logger.debug(f"Parsing Traefik rule {key}: {value}")
            for hostname in extract_hosts_from_rule(value):
                if hostname not in hosts:
                    hosts.append(hostname)
        return hosts


# =============================================================================
# Workload Source Interface and Implementations
# =============================================================================


class EventSubscription:
    """Iterable wrapper around a Docker event stream.

    ``close()`` may be called from another thread, any number of times. Once
    closed, a failing read ends iteration instead of raising.
    """

    def __init__(self, stream: Any):
        self._stream = stream
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[PlatformEvent]:
        try:
            for raw in self._stream:
                if not isinstance(raw, dict):
                    logger.debug(f"Skipping non-dict event: {raw}")
                    continue
                yield PlatformEvent.from_docker(raw)
        except (DockerException, requests.exceptions.RequestException, OSError, ValueError) as e:
            if self._closed:
                return
            raise SubscriptionError(f"event stream error: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._stream.close()
        except (DockerException, OSError) as e:
            logger.debug(f"Ignoring error while closing event stream: {e}")


class WorkloadSource(ABC):
    """Abstract base class for Docker workload sources."""

    def __init__(self, client: docker.DockerClient):
        self._client = client

    @property
    @abstractmethod
    def mode(self) -> DockerMode:
        """Return the Docker topology this source serves."""
        pass

    @abstractmethod
    def list_workloads(self) -> List[Workload]:
        """List current workloads. Raises PlatformError."""
        pass

    @abstractmethod
    def event_filters(self) -> Dict[str, Any]:
        """Return server-side filters for the lifecycle events of interest."""
        pass

    def subscribe(self) -> EventSubscription:
        try:
            stream = self._client.events(decode=True, filters=self.event_filters())
        except (DockerException, requests.exceptions.RequestException) as e:
            raise SubscriptionError(f"subscribing to docker events: {e}") from e
        return EventSubscription(stream)

    def ping(self) -> None:
        try:
            self._client.ping()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise PlatformError(f"pinging docker: {e}") from e


class SwarmWorkloadSource(WorkloadSource):
    """Swarm services. Labels come from the service spec, not its tasks."""

    @property
    def mode(self) -> DockerMode:
        return DockerMode.SWARM

    def list_workloads(self) -> List[Workload]:
        try:
            services = self._client.services.list()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise PlatformError(f"listing services: {e}") from e

        workloads = []
        for svc in services:
            spec = svc.attrs.get("Spec") or {}
            workloads.append(
                Workload(
                    id=svc.id,
                    name=spec.get("Name") or svc.id[:12],
                    labels=dict(spec.get("Labels") or {}),
                    kind=WorkloadKind.SERVICE,
                )
            )
        logger.debug(f"Listed {len(workloads)} swarm service(s)")
        return workloads

    def event_filters(self) -> Dict[str, Any]:
        return {"type": "service", "event": ["create", "update", "remove"]}


class StandaloneWorkloadSource(WorkloadSource):
    """Running containers on a single Docker engine."""

    @property
    def mode(self) -> DockerMode:
        return DockerMode.STANDALONE

    def list_workloads(self) -> List[Workload]:
        try:
            # Containers removed between list and inspect are skipped.
            containers = self._client.containers.list(
                filters={"status": "running"}, ignore_removed=True
            )
        except (DockerException, requests.exceptions.RequestException) as e:
            raise PlatformError(f"listing containers: {e}") from e

        workloads = []
        for ctr in containers:
            workloads.append(
                Workload(
                    id=ctr.id,
                    name=(ctr.name or "").lstrip("/"),
                    labels=dict(ctr.labels or {}),
                    kind=WorkloadKind.CONTAINER,
                )
            )
        logger.debug(f"Listed {len(workloads)} container(s)")
        return workloads

    def event_filters(self) -> Dict[str, Any]:
        return {"type": "container", "event": ["start", "die", "destroy"]}


# =============================================================================
# Provider Registry
# =============================================================================

WORKLOAD_SOURCES = {
    DockerMode.SWARM: SwarmWorkloadSource,
    DockerMode.STANDALONE: StandaloneWorkloadSource,
}


def detect_mode(client: docker.DockerClient) -> DockerMode:
    """Detect Swarm vs standalone from ``docker info``."""
    try:
        info = client.info()
    except (DockerException, requests.exceptions.RequestException) as e:
        raise PlatformError(f"getting docker info: {e}") from e

    swarm = info.get("Swarm") or {}
    logger.debug(
        f"Docker swarm state: {swarm.get('LocalNodeState', '')} (node={swarm.get('NodeID', '')})"
    )
    if swarm.get("LocalNodeState") == "active":
        if not swarm.get("ControlAvailable"):
            raise PlatformError(
                "swarm mode detected but this node is not a manager - cannot list services"
            )
        return DockerMode.SWARM
    return DockerMode.STANDALONE


def create_workload_source(client: docker.DockerClient, mode: str = "auto") -> WorkloadSource:
    """Factory function to create the workload source for the configured mode."""
    mode = mode.lower().strip()
    if mode == "auto":
        resolved = detect_mode(client)
    else:
        try:
            resolved = DockerMode(mode)
        except ValueError:
            raise ValueError(
                f"Unsupported docker mode: '{mode}'. Supported modes: auto, swarm, standalone"
            ) from None

    source = WORKLOAD_SOURCES[resolved](client)
    logger.info(f"Docker workload source initialized (mode={resolved.value})")
    return source
