"""Tests for the health/readiness/metrics HTTP server."""

import time
from typing import Iterator

import pytest
import requests

from technitium_companion.health import HealthServer, MetricsReporter


@pytest.fixture
def reporter() -> MetricsReporter:
    reporter = MetricsReporter()
    reporter.set_build_info("1.2.3", "3.12.0")
    reporter.set_up()
    return reporter


@pytest.fixture
def server(reporter: MetricsReporter) -> Iterator[HealthServer]:
    server = HealthServer(
        0, registry=reporter.registry, version="1.2.3", host="127.0.0.1", check_timeout_seconds=0.5
    )
    server.start()
    yield server
    server.shutdown()


def _url(server: HealthServer, path: str) -> str:
    host, port = server.address
    return f"http://{host}:{port}{path}"


def _failing_checker() -> None:
    raise RuntimeError("docker unreachable")


def test_ready_is_unavailable_until_marked_ready(server: HealthServer) -> None:
    response = requests.get(_url(server, "/ready"), timeout=5)

    assert response.status_code == 503
    assert response.json() == {"status": "unhealthy", "version": "1.2.3"}


def test_ready_after_startup(server: HealthServer) -> None:
    server.register_checker("docker", lambda: None)
    server.set_ready(True)

    response = requests.get(_url(server, "/readyz"), timeout=5)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["components"]["docker"]["status"] == "healthy"


def test_ready_fails_when_checker_fails(server: HealthServer) -> None:
    server.register_checker("docker", _failing_checker)
    server.set_ready(True)

    response = requests.get(_url(server, "/ready"), timeout=5)

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["components"]["docker"] == {
        "status": "unhealthy",
        "message": "docker unreachable",
        "latency": body["components"]["docker"]["latency"],
    }


def test_health_is_always_ok(server: HealthServer) -> None:
    server.register_checker("technitium", lambda: None)
    server.register_checker("docker", _failing_checker)

    response = requests.get(_url(server, "/health"), timeout=5)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "degraded"
    assert body["version"] == "1.2.3"
    assert body["uptime"].endswith("s")
    assert body["components"]["technitium"]["status"] == "healthy"
    assert body["components"]["docker"]["status"] == "unhealthy"


def test_slow_checker_times_out(server: HealthServer) -> None:
    server.register_checker("technitium", lambda: time.sleep(2))

    healthy, components = server.run_checks()

    assert healthy is False
    assert components["technitium"]["message"] == "check timed out after 0.5s"


def test_metrics_endpoint(server: HealthServer, reporter: MetricsReporter) -> None:
    reporter.record_created("example.com")

    response = requests.get(_url(server, "/metrics"), timeout=5)

    assert response.status_code == 200
    assert response.headers["Content-Type"].startswith("text/plain")
    assert 'technitium_companion_dns_records_created_total{zone="example.com"} 1.0' in response.text
    assert "technitium_companion_up 1.0" in response.text
    assert 'version="1.2.3"' in response.text


def test_unknown_path_is_404(server: HealthServer) -> None:
    response = requests.get(_url(server, "/nope"), timeout=5)

    assert response.status_code == 404
