#!/usr/bin/env python3
"""technitium-companion - Traefik label to Technitium DNS synchronization

Watches Docker (Swarm services or standalone containers) for Traefik router
rules and ensures an A record exists in a Technitium DNS zone for every
hostname found. Records are never removed automatically; stale records are
left for manual cleanup.

Environment variables:

    Technitium DNS:
        TECHNITIUM_URL         Technitium base URL (required), e.g. http://dns:5380
        TECHNITIUM_TOKEN       API token (required, or TECHNITIUM_TOKEN_FILE)
        TECHNITIUM_ZONE        Zone to manage (required), e.g. example.com
        TECHNITIUM_TIMEOUT_SECONDS
                               Per-request timeout (default: 30)

    Records:
        TARGET_IP              Address every A record points at (required)
        TTL                    Record TTL in seconds (default: 300)

    Hostname filtering:
        INCLUDE_PATTERN        Regex a hostname must match (default: .*)
        EXCLUDE_PATTERN        Regex that rejects a hostname (default: none)
                               Exclude always wins over include.
                               Example: INCLUDE_PATTERN='\\.internal\\.example\\.com$'
                                        EXCLUDE_PATTERN='^test\\.'

    Docker:
        DOCKER_HOST            Docker endpoint (default: unix:///var/run/docker.sock)
        DOCKER_MODE            "auto", "swarm" or "standalone" (default: auto)
                               Swarm mode requires a manager node.

    Runtime:
        RECONCILE_ON_STARTUP   Full reconciliation before watching (default: true)
        DRY_RUN                Log intended changes without calling the DNS API (default: false)
        DEBOUNCE_SECONDS       Quiet period after the first event (default: 5)
        HEALTH_PORT            Port for /health, /ready and /metrics (default: 8080)
        LOG_LEVEL              debug, info, warn, error (default: info)
        COMPANION_CONFIG_PATH  Optional YAML file with defaults (lower-case keys)

    Any variable may also be supplied as NAME_FILE pointing at a file that
    holds the value (Docker secrets).
"""

from __future__ import annotations

import logging
import platform
import signal
import sys
import threading
from importlib.metadata import PackageNotFoundError, version
from typing import List

import docker
from docker.errors import DockerException

from technitium_companion.config import LOG_LEVELS, Config, ConfigError, load_config
from technitium_companion.health import HealthServer, MetricsReporter
from technitium_companion.providers import (
    CompanionError,
    PlatformError,
    TechnitiumDNSProvider,
    TraefikLabelParser,
    WorkloadSource,
    create_workload_source,
)
from technitium_companion.syncer import EventWatcher, Reconciler

logger = logging.getLogger("technitium_companion")

HEALTH_CHECK_HOSTNAME = "_health-check.invalid"

try:
    __version__ = version("technitium-companion")
except PackageNotFoundError:
    __version__ = "dev"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=LOG_LEVELS.get(level.lower(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def run_startup_reconciliation(reconciler: Reconciler) -> None:
    """Run the startup pass. A failure is logged; events will retry later."""
    logger.info("Running startup reconciliation")
    try:
        result = reconciler.reconcile()
    except PlatformError as e:
        logger.error(f"Startup reconciliation failed: {e}")
        return
    logger.info(
        f"Startup reconciliation complete: workloads_scanned={result.workloads_scanned} "
        f"records_created={result.records_created} records_existed={result.records_existed} "
        f"errors={len(result.errors)}"
    )


def run(config: Config, stop_event: threading.Event) -> int:
    """Wire components together and block until stopped. Returns the exit code."""
    reporter = MetricsReporter()
    reporter.set_build_info(__version__, platform.python_version())
    reporter.set_up()

    try:
        client = docker.DockerClient(base_url=config.docker_host)
        source = create_workload_source(client, config.docker_mode)
    except (DockerException, PlatformError) as e:
        logger.error(f"Cannot connect to Docker at {config.docker_host}: {e}")
        return 1

    logger.info(f"Docker client connected (mode={source.mode.value}, host={config.docker_host})")

    dns_provider = TechnitiumDNSProvider(
        config.technitium_url,
        config.technitium_token,
        timeout_seconds=config.technitium_timeout_seconds,
        reporter=reporter,
    )
    logger.info(
        f"{dns_provider.name} configured (url={config.technitium_url}, "
        f"zone={config.technitium_zone}, target_ip={config.target_ip})"
    )

    reconciler = Reconciler(
        config=config,
        workload_source=source,
        label_parser=TraefikLabelParser(),
        dns_provider=dns_provider,
        reporter=reporter,
    )

    health = HealthServer(config.health_port, registry=reporter.registry, version=__version__)
    health.register_checker("docker", source.ping)
    health.register_checker(
        "technitium",
        lambda: dns_provider.get_records(config.technitium_zone, HEALTH_CHECK_HOSTNAME),
    )
    try:
        health.start()
    except OSError as e:
        logger.error(f"Cannot start health server on port {config.health_port}: {e}")
        client.close()
        return 1

    try:
        return serve(
            config,
            stop_event,
            reconciler=reconciler,
            workload_source=source,
            health=health,
            reporter=reporter,
        )
    finally:
        health.shutdown()
        client.close()


def mark_ready_after_startup(
    reconciler: Reconciler, health: HealthServer, reconcile_on_startup: bool
) -> None:
    """Run the optional startup pass, then report ready."""
    if reconcile_on_startup:
        run_startup_reconciliation(reconciler)
    health.set_ready(True)


def serve(
    config: Config,
    stop_event: threading.Event,
    *,
    reconciler: Reconciler,
    workload_source: WorkloadSource,
    health: HealthServer,
    reporter: MetricsReporter,
) -> int:
    """Become ready, then watch events until stopped. Returns the exit code.

    Returns 1 when the event watcher fails; the watcher sets ``stop_event``
    itself so the main thread wakes up.
    """
    mark_ready_after_startup(reconciler, health, config.reconcile_on_startup)

    watcher = EventWatcher(
        reconciler=reconciler,
        workload_source=workload_source,
        debounce_seconds=config.debounce_seconds,
        reporter=reporter,
    )
    watcher_errors: List[CompanionError] = []

    def _watch() -> None:
        try:
            watcher.watch(stop_event)
        except CompanionError as e:
            watcher_errors.append(e)
        finally:
            stop_event.set()

    watcher_thread = threading.Thread(target=_watch, name="event-watcher", daemon=True)
    watcher_thread.start()
    logger.info(f"technitium-companion running (health_port={config.health_port})")

    while not stop_event.wait(1.0):
        pass

    logger.info("Shutting down")
    watcher_thread.join(timeout=10.0)

    if watcher_errors:
        logger.error(f"Event watcher error: {watcher_errors[0]}")
        return 1
    logger.info("technitium-companion stopped")
    return 0


def main() -> None:
    """Main entry point."""
    try:
        config = load_config()
    except ConfigError as e:
        configure_logging("info")
        logger.error(str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    logger.info(
        f"technitium-companion {__version__} starting "
        f"(log_level={config.log_level}, dry_run={config.dry_run})"
    )

    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info(f"Received shutdown signal: {signal.Signals(signum).name}")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        exit_code = run(config, stop_event)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        exit_code = 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
