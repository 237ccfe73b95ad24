"""Prometheus metrics and the health/readiness HTTP server.

Endpoints:
    /health, /healthz   Liveness. Always 200; "degraded" when a checker fails.
    /ready, /readyz     Readiness. 503 until startup reconciliation finished
                        and whenever a checker fails.
    /metrics            Prometheus exposition of the injected registry.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from threading import Lock, Thread
from typing import Any, Callable, Dict, Optional, Tuple

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

NAMESPACE = "technitium_companion"

# =============================================================================
# Metrics
# =============================================================================


class MetricsReporter:
    """Records reconciliation, DNS API and Docker event metrics.

    Metrics live on ``registry``, which defaults to a fresh private
    ``CollectorRegistry`` so that several reporters can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self._records_created = Counter(
            "dns_records_created",
            "Total number of DNS A records created",
            labelnames=("zone",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._records_deleted = Counter(
            "dns_records_deleted",
            "Total number of DNS A records deleted",
            labelnames=("zone",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._records_existed = Counter(
            "dns_records_existed",
            "Total number of DNS A records that already existed",
            labelnames=("zone",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._api_requests = Counter(
            "api_requests",
            "Total number of Technitium API requests",
            labelnames=("endpoint", "status"),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._api_latency = Histogram(
            "api_request_duration_seconds",
            "Duration of Technitium API requests in seconds",
            labelnames=("endpoint",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._docker_events = Counter(
            "docker_events",
            "Total number of Docker events processed",
            labelnames=("type", "action"),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._reconciliations = Counter(
            "reconciliations",
            "Total number of reconciliation runs",
            labelnames=("status",),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._reconciliation_latency = Histogram(
            "reconciliation_duration_seconds",
            "Duration of reconciliation runs in seconds",
            buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._workloads_scanned = Gauge(
            "workloads_scanned",
            "Number of Docker workloads scanned in the last reconciliation",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._hostnames_found = Gauge(
            "hostnames_found",
            "Number of Traefik hostnames found in the last reconciliation",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._last_reconciliation = Gauge(
            "last_reconciliation_timestamp_seconds",
            "Unix timestamp of the last successful reconciliation",
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._build_info = Gauge(
            "build_info",
            "Build information for technitium-companion",
            labelnames=("version", "python_version"),
            namespace=NAMESPACE,
            registry=self.registry,
        )
        self._up = Gauge(
            "up",
            "Whether technitium-companion is up and running (1 = up, 0 = down)",
            namespace=NAMESPACE,
            registry=self.registry,
        )

    def set_build_info(self, version: str, python_version: str) -> None:
        self._build_info.labels(version=version, python_version=python_version).set(1)

    def set_up(self, up: bool = True) -> None:
        self._up.set(1 if up else 0)

    def record_api_request(self, endpoint: str, status: str, duration_seconds: float) -> None:
        self._api_requests.labels(endpoint=endpoint, status=status).inc()
        self._api_latency.labels(endpoint=endpoint).observe(duration_seconds)

    def record_created(self, zone: str) -> None:
        self._records_created.labels(zone=zone).inc()

    def record_deleted(self, zone: str) -> None:
        self._records_deleted.labels(zone=zone).inc()

    def record_existed(self, zone: str) -> None:
        self._records_existed.labels(zone=zone).inc()

    def record_event(self, event_type: str, action: str) -> None:
        self._docker_events.labels(type=event_type, action=action).inc()

    def record_reconciliation(self, result: Any) -> None:
        """Record a finished pass. ``result`` is a ``ReconcileResult``."""
        self._reconciliations.labels(status=result.status).inc()
        self._reconciliation_latency.observe(result.duration)
        self._workloads_scanned.set(result.workloads_scanned)
        self._hostnames_found.set(result.hostnames_found)
        if result.status == "success":
            self._last_reconciliation.set_to_current_time()


# =============================================================================
# Health Server
# =============================================================================

Checker = Callable[[], Any]


class HealthServer:
    """Minimal HTTP server for liveness, readiness and metrics."""

    def __init__(
        self,
        port: int,
        *,
        registry: CollectorRegistry,
        version: str = "dev",
        host: str = "0.0.0.0",
        check_timeout_seconds: float = 5.0,
    ):
        self._port = port
        self._host = host
        self._registry = registry
        self._version = version
        self._check_timeout = check_timeout_seconds
        self._start_time = time.monotonic()
        self._lock = Lock()
        self._checkers: Dict[str, Checker] = {}
        self._ready = False
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="health-check")

    @property
    def address(self) -> Tuple[str, int]:
        if self._server is None:
            return self._host, self._port
        host, port = self._server.server_address[:2]
        return str(host), int(port)

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._ready

    def register_checker(self, name: str, checker: Checker) -> None:
        with self._lock:
            self._checkers[name] = checker

    def set_ready(self, ready: bool) -> None:
        with self._lock:
            self._ready = ready
        logger.info(f"Readiness state changed: ready={ready}")

    def start(self) -> None:
        """Bind the port and serve on a daemon thread."""
        if self._thread is not None:
            return
        self._server = ThreadingHTTPServer((self._host, self._port), _build_handler(self))
        self._thread = Thread(target=self._server.serve_forever, name="health-server", daemon=True)
        self._thread.start()
        logger.info(f"Health server listening on {self.address[0]}:{self.address[1]}")

    def shutdown(self) -> None:
        if self._server is None:
            return
        logger.info("Health server shutting down")
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._server = None
        self._thread = None
        self._executor.shutdown(wait=False)

    def run_checks(self) -> Tuple[bool, Dict[str, Dict[str, str]]]:
        """Run every registered checker. Returns (all_healthy, components)."""
        with self._lock:
            checkers = dict(self._checkers)

        all_healthy = True
        components: Dict[str, Dict[str, str]] = {}
        for name, checker in sorted(checkers.items()):
            start = time.monotonic()
            try:
                self._executor.submit(checker).result(timeout=self._check_timeout)
            except FutureTimeoutError:
                all_healthy = False
                components[name] = {
                    "status": "unhealthy",
                    "message": f"check timed out after {self._check_timeout:g}s",
                    "latency": _format_latency(time.monotonic() - start),
                }
            except Exception as e:  # noqa: BLE001 - any checker failure is reported, not raised
                all_healthy = False
                components[name] = {
                    "status": "unhealthy",
                    "message": str(e),
                    "latency": _format_latency(time.monotonic() - start),
                }
            else:
                components[name] = {
                    "status": "healthy",
                    "latency": _format_latency(time.monotonic() - start),
                }
        return all_healthy, components

    def health_response(self) -> Tuple[HTTPStatus, Dict[str, Any]]:
        all_healthy, components = self.run_checks()
        return HTTPStatus.OK, {
            "status": "healthy" if all_healthy else "degraded",
            "version": self._version,
            "uptime": f"{int(time.monotonic() - self._start_time)}s",
            "components": components,
        }

    def ready_response(self) -> Tuple[HTTPStatus, Dict[str, Any]]:
        if not self.ready:
            return HTTPStatus.SERVICE_UNAVAILABLE, {
                "status": "unhealthy",
                "version": self._version,
            }
        all_healthy, components = self.run_checks()
        status = HTTPStatus.OK if all_healthy else HTTPStatus.SERVICE_UNAVAILABLE
        return status, {
            "status": "healthy" if all_healthy else "unhealthy",
            "version": self._version,
            "components": components,
        }

    def metrics_body(self) -> bytes:
        return generate_latest(self._registry)


def _format_latency(seconds: float) -> str:
    return f"{seconds * 1000:.1f}ms"


def _build_handler(server: HealthServer) -> type[BaseHTTPRequestHandler]:
    """Build one request handler class bound to a HealthServer."""

    class _HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            path = self.path.split("?", 1)[0]
            if path in ("/health", "/healthz"):
                self._write_json(*server.health_response())
            elif path in ("/ready", "/readyz"):
                self._write_json(*server.ready_response())
            elif path == "/metrics":
                body = server.metrics_body()
                self.send_response(HTTPStatus.OK)
                self.send_header("Content-Type", CONTENT_TYPE_LATEST)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
            else:
                self._write_json(HTTPStatus.NOT_FOUND, {"status": "not found"})

        def log_message(self, format: str, *args: object) -> None:
            logger.debug(f"health server: {format % args}")

        def _write_json(self, status: HTTPStatus, payload: Dict[str, Any]) -> None:
            body = json.dumps(payload).encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

    return _HealthHandler
