"""Unit tests for Docker workload sources and the event subscription wrapper."""

from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import ContainerCollection

from technitium_companion.providers import (
    DockerMode,
    EventSubscription,
    PlatformError,
    PlatformEvent,
    StandaloneWorkloadSource,
    SubscriptionError,
    SwarmWorkloadSource,
    WorkloadKind,
    create_workload_source,
    detect_mode,
)


def _client(swarm: Optional[Dict[str, Any]] = None) -> MagicMock:
    client = MagicMock()
    client.info.return_value = {"Swarm": swarm or {"LocalNodeState": "inactive"}}
    return client


def _service(service_id: str, name: str, labels: Optional[Dict[str, str]]) -> MagicMock:
    svc = MagicMock()
    svc.id = service_id
    svc.attrs = {"ID": service_id, "Spec": {"Name": name, "Labels": labels}}
    return svc


def _container(container_id: str, name: str, labels: Dict[str, str]) -> MagicMock:
    ctr = MagicMock()
    ctr.id = container_id
    # name is a reserved MagicMock constructor argument
    ctr.name = name
    ctr.labels = labels
    return ctr


class FakeStream:
    def __init__(self, items: List[Any], error: Optional[Exception] = None):
        self.items = items
        self.error = error
        self.close_calls = 0

    def __iter__(self):
        yield from self.items
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.close_calls += 1


# =============================================================================
# Mode Detection and Factory
# =============================================================================


class TestDetectMode:
    """Tests for Swarm vs standalone detection."""

    def test_active_manager_is_swarm(self) -> None:
        client = _client({"LocalNodeState": "active", "ControlAvailable": True, "NodeID": "n1"})

        assert detect_mode(client) is DockerMode.SWARM

    def test_inactive_swarm_is_standalone(self) -> None:
        assert detect_mode(_client({"LocalNodeState": "inactive"})) is DockerMode.STANDALONE

    def test_missing_swarm_section_is_standalone(self) -> None:
        client = MagicMock()
        client.info.return_value = {}

        assert detect_mode(client) is DockerMode.STANDALONE

    def test_swarm_worker_is_rejected(self) -> None:
        client = _client({"LocalNodeState": "active", "ControlAvailable": False})

        with pytest.raises(PlatformError, match="not a manager"):
            detect_mode(client)

    def test_info_failure_is_platform_error(self) -> None:
        client = MagicMock()
        client.info.side_effect = DockerException("Cannot connect to the Docker daemon")

        with pytest.raises(PlatformError, match="getting docker info"):
            detect_mode(client)


class TestCreateWorkloadSource:
    """Tests for the workload source factory."""

    def test_auto_detects_swarm(self) -> None:
        client = _client({"LocalNodeState": "active", "ControlAvailable": True})

        source = create_workload_source(client, "auto")

        assert isinstance(source, SwarmWorkloadSource)
        assert source.mode is DockerMode.SWARM

    def test_auto_detects_standalone(self) -> None:
        source = create_workload_source(_client(), "auto")

        assert isinstance(source, StandaloneWorkloadSource)

    def test_explicit_mode_skips_detection(self) -> None:
        client = _client()

        source = create_workload_source(client, "Swarm")

        assert isinstance(source, SwarmWorkloadSource)
        client.info.assert_not_called()

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError, match="Unsupported docker mode"):
            create_workload_source(_client(), "kubernetes")


# =============================================================================
# Listing
# =============================================================================


class TestSwarmWorkloadSource:
    """Tests for listing Swarm services."""

    def test_list_workloads_reads_service_spec_labels(self) -> None:
        client = MagicMock()
        client.services.list.return_value = [
            _service("svc1", "web", {"traefik.http.routers.web.rule": "Host(`web.example.com`)"}),
            _service("svc2", "db", None),
        ]

        workloads = SwarmWorkloadSource(client).list_workloads()

        assert [w.name for w in workloads] == ["web", "db"]
        assert workloads[0].id == "svc1"
        assert workloads[0].kind is WorkloadKind.SERVICE
        assert workloads[0].labels == {"traefik.http.routers.web.rule": "Host(`web.example.com`)"}
        assert workloads[1].labels == {}

    def test_list_failure_is_platform_error(self) -> None:
        client = MagicMock()
        client.services.list.side_effect = APIError("This node is not a swarm manager")

        with pytest.raises(PlatformError, match="listing services"):
            SwarmWorkloadSource(client).list_workloads()

    def test_event_filters(self) -> None:
        filters = SwarmWorkloadSource(MagicMock()).event_filters()

        assert filters == {"type": "service", "event": ["create", "update", "remove"]}


class TestStandaloneWorkloadSource:
    """Tests for listing standalone containers."""

    def test_list_workloads_running_containers(self) -> None:
        client = MagicMock()
        client.containers.list.return_value = [
            _container("c1", "/web", {"traefik.enable": "true"}),
        ]

        workloads = StandaloneWorkloadSource(client).list_workloads()

        client.containers.list.assert_called_once_with(
            filters={"status": "running"}, ignore_removed=True
        )
        assert len(workloads) == 1
        assert workloads[0].name == "web"
        assert workloads[0].kind is WorkloadKind.CONTAINER
        assert workloads[0].labels == {"traefik.enable": "true"}

    def test_container_removed_during_listing_is_skipped(self) -> None:
        """Test that a container gone before inspect does not fail the listing."""
        client = MagicMock()
        client.containers = ContainerCollection(client=client)
        client.api.containers.return_value = [{"Id": "live"}, {"Id": "gone"}]

        def inspect(container_id: str) -> Dict[str, Any]:
            if container_id == "gone":
                raise NotFound("No such container: gone")
            return {
                "Id": "live",
                "Name": "/web",
                "Config": {"Labels": {"traefik.http.routers.web.rule": "Host(`web.example.com`)"}},
            }

        client.api.inspect_container.side_effect = inspect

        workloads = StandaloneWorkloadSource(client).list_workloads()

        assert [w.id for w in workloads] == ["live"]
        assert workloads[0].name == "web"
        assert workloads[0].labels == {
            "traefik.http.routers.web.rule": "Host(`web.example.com`)"
        }

    def test_list_failure_is_platform_error(self) -> None:
        client = MagicMock()
        client.containers.list.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(PlatformError, match="listing containers: refused"):
            StandaloneWorkloadSource(client).list_workloads()

    def test_event_filters(self) -> None:
        filters = StandaloneWorkloadSource(MagicMock()).event_filters()

        assert filters == {"type": "container", "event": ["start", "die", "destroy"]}

    def test_ping_failure_is_platform_error(self) -> None:
        client = MagicMock()
        client.ping.side_effect = DockerException("daemon gone")

        with pytest.raises(PlatformError, match="pinging docker"):
            StandaloneWorkloadSource(client).ping()


# =============================================================================
# Event Subscription
# =============================================================================


class TestEventSubscription:
    """Tests for subscribing to and iterating Docker events."""

    def test_subscribe_passes_decoded_filters(self) -> None:
        client = MagicMock()
        client.events.return_value = FakeStream([])

        subscription = StandaloneWorkloadSource(client).subscribe()

        client.events.assert_called_once_with(
            decode=True, filters={"type": "container", "event": ["start", "die", "destroy"]}
        )
        assert isinstance(subscription, EventSubscription)

    def test_subscribe_failure_is_subscription_error(self) -> None:
        client = MagicMock()
        client.events.side_effect = DockerException("refused")

        with pytest.raises(SubscriptionError, match="subscribing to docker events"):
            SwarmWorkloadSource(client).subscribe()

    def test_iterates_platform_events(self) -> None:
        raw = {
            "Type": "container",
            "Action": "start",
            "Actor": {"ID": "abc123", "Attributes": {"name": "web", "image": "nginx"}},
        }
        subscription = EventSubscription(FakeStream([raw, "not-an-event"]))

        events = list(subscription)

        assert events == [
            PlatformEvent(
                type="container",
                action="start",
                actor_id="abc123",
                attributes={"name": "web", "image": "nginx"},
            )
        ]
        assert events[0].actor_name == "web"

    def test_stream_error_is_subscription_error(self) -> None:
        subscription = EventSubscription(FakeStream([], error=OSError("connection reset")))

        with pytest.raises(SubscriptionError, match="connection reset"):
            list(subscription)

    def test_stream_error_after_close_ends_iteration(self) -> None:
        stream = FakeStream([], error=OSError("connection reset"))
        subscription = EventSubscription(stream)
        subscription.close()

        assert list(subscription) == []
        assert subscription.closed

    def test_close_is_idempotent(self) -> None:
        stream = FakeStream([])
        subscription = EventSubscription(stream)

        subscription.close()
        subscription.close()

        assert stream.close_calls == 1
