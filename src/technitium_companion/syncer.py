"""Reconciliation engine and Docker event watcher.

The reconciler ensures an A record exists in the configured zone for every
hostname found in Traefik router labels. Records are never removed when a
workload goes away; stale records are left for manual cleanup. The only way
to delete is an explicit ``delete_hostnames`` call.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from technitium_companion.config import Config
from technitium_companion.health import MetricsReporter
from technitium_companion.providers import (
    CompanionError,
    DNSProvider,
    EventSubscription,
    PlatformError,
    PlatformEvent,
    SubscriptionError,
    TraefikLabelParser,
    Workload,
    WorkloadSource,
)

module_logger = logging.getLogger(__name__)

# =============================================================================
# Results
# =============================================================================


class ReconcileError(CompanionError):
    """A workload or hostname that could not be reconciled in an otherwise successful pass."""


@dataclass
class ReconcileResult:
    workloads_scanned: int = 0
    hostnames_found: int = 0
    # Hostnames that passed the include/exclude filter.
    hostnames_filtered: int = 0
    records_created: int = 0
    records_existed: int = 0
    errors: List[Exception] = field(default_factory=list)
    duration: float = 0.0

    @property
    def status(self) -> str:
        return "error" if self.errors else "success"


def _collect(result: ReconcileResult, message: str, cause: Exception) -> None:
    error = ReconcileError(message)
    error.__cause__ = cause
    result.errors.append(error)


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Ensures DNS A records exist for Traefik-labeled Docker workloads.

    Every entry point holds the same lock, so a full pass, a partial pass and
    an explicit delete never interleave their DNS calls. Callers block until
    the lock is free.
    """

    def __init__(
        self,
        *,
        config: Config,
        workload_source: WorkloadSource,
        label_parser: TraefikLabelParser,
        dns_provider: DNSProvider,
        reporter: Optional[MetricsReporter] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.workload_source = workload_source
        self.label_parser = label_parser
        self.dns_provider = dns_provider
        self.reporter = reporter if reporter is not None else MetricsReporter()
        self.logger = logger or module_logger
        self._lock = threading.Lock()

    def reconcile(self) -> ReconcileResult:
        """Scan all workloads and ensure their records exist.

        Raises PlatformError when workloads cannot be listed. Failures scoped
        to a single workload are collected in ``result.errors``.
        """
        with self._lock:
            start = time.monotonic()
            result = ReconcileResult()

            self.logger.info(
                f"Starting reconciliation (mode={self.workload_source.mode.value}, "
                f"dry_run={self.config.dry_run})"
            )

            try:
                workloads = self.workload_source.list_workloads()
            except PlatformError as e:
                raise PlatformError(f"listing workloads: {e}") from e

            result.workloads_scanned = len(workloads)
            self.logger.debug(f"Scanned {len(workloads)} workload(s)")

            for workload in workloads:
                try:
                    self._process_workload(workload, result)
                except CompanionError as e:
                    self.logger.error(
                        f"Failed to process {workload.kind.value} '{workload.name}': {e}"
                    )
                    _collect(result, f"workload {workload.name}: {e}", e)

            result.duration = time.monotonic() - start
            self.reporter.record_reconciliation(result)

            self.logger.info(
                f"Reconciliation complete: workloads_scanned={result.workloads_scanned} "
                f"hostnames_found={result.hostnames_found} "
                f"hostnames_filtered={result.hostnames_filtered} "
                f"records_created={result.records_created} "
                f"records_existed={result.records_existed} "
                f"errors={len(result.errors)} duration={result.duration:.3f}s"
            )
            return result

    def _process_workload(self, workload: Workload, result: ReconcileResult) -> None:
        hosts = self.label_parser.extract_hosts(workload.labels)
        if not hosts:
            self.logger.debug(f"No Traefik hosts found on '{workload.name}'")
            return

        result.hostnames_found += len(hosts)
        self.logger.debug(f"Found Traefik hosts on '{workload.name}': {', '.join(hosts)}")

        for host in hosts:
            try:
                self._ensure_record(workload.name, host, result)
            except CompanionError as e:
                raise ReconcileError(f"ensuring record for {host}: {e}") from e

    def _ensure_record(self, workload_name: str, hostname: str, result: ReconcileResult) -> None:
        cfg = self.config
        if not cfg.matches_filters(hostname):
            self.logger.debug(f"Hostname '{hostname}' filtered out (workload={workload_name})")
            return

        result.hostnames_filtered += 1

        if cfg.dry_run:
            self.logger.info(
                f"DRY RUN: would ensure A record {hostname} -> {cfg.target_ip} "
                f"(zone={cfg.technitium_zone}, ttl={cfg.ttl}, workload={workload_name})"
            )
            # Reported as created so dry-run dashboards match a live run.
            result.records_created += 1
            self.reporter.record_created(cfg.technitium_zone)
            return

        created = self.dns_provider.ensure_a_record(
            cfg.technitium_zone, hostname, cfg.target_ip, cfg.ttl
        )
        if created:
            result.records_created += 1
            self.reporter.record_created(cfg.technitium_zone)
            self.logger.info(
                f"Created A record {hostname} -> {cfg.target_ip} "
                f"(zone={cfg.technitium_zone}, workload={workload_name})"
            )
        else:
            result.records_existed += 1
            self.reporter.record_existed(cfg.technitium_zone)
            self.logger.debug(f"A record already exists: {hostname} -> {cfg.target_ip}")

    def reconcile_hostnames(self, workload_name: str, hostnames: Iterable[str]) -> ReconcileResult:
        """Ensure records for specific hostnames. Errors are collected per hostname."""
        with self._lock:
            start = time.monotonic()
            hostnames = list(hostnames)
            result = ReconcileResult(hostnames_found=len(hostnames))

            self.logger.debug(
                f"Reconciling hostnames for '{workload_name}': {', '.join(hostnames)}"
            )

            for hostname in hostnames:
                try:
                    self._ensure_record(workload_name, hostname, result)
                except CompanionError as e:
                    self.logger.error(f"Failed to ensure record for {hostname}: {e}")
                    _collect(result, f"hostname {hostname}: {e}", e)

            result.duration = time.monotonic() - start
            return result

    def delete_hostnames(self, workload_name: str, hostnames: Iterable[str]) -> int:
        """Delete the configured A record for each hostname. Returns the number deleted.

        Only records pointing at the configured target are touched. A hostname
        whose check or delete fails is logged and skipped.
        """
        with self._lock:
            cfg = self.config
            hostnames = list(hostnames)
            deleted = 0

            self.logger.debug(f"Deleting hostnames for '{workload_name}': {', '.join(hostnames)}")

            for hostname in hostnames:
                if not cfg.matches_filters(hostname):
                    continue

                if cfg.dry_run:
                    self.logger.info(
                        f"DRY RUN: would delete A record {hostname} -> {cfg.target_ip} "
                        f"(zone={cfg.technitium_zone}, workload={workload_name})"
                    )
                    deleted += 1
                    self.reporter.record_deleted(cfg.technitium_zone)
                    continue

                try:
                    exists = self.dns_provider.has_a_record(
                        cfg.technitium_zone, hostname, cfg.target_ip
                    )
                except CompanionError as e:
                    self.logger.error(f"Failed to check record existence for {hostname}: {e}")
                    continue

                if not exists:
                    self.logger.debug(f"A record does not exist, skipping delete: {hostname}")
                    continue

                try:
                    self.dns_provider.delete_a_record(cfg.technitium_zone, hostname, cfg.target_ip)
                except CompanionError as e:
                    self.logger.error(f"Failed to delete A record for {hostname}: {e}")
                    continue

                deleted += 1
                self.reporter.record_deleted(cfg.technitium_zone)
                self.logger.info(
                    f"Deleted A record {hostname} -> {cfg.target_ip} "
                    f"(zone={cfg.technitium_zone}, workload={workload_name})"
                )

            return deleted


# =============================================================================
# Event Watcher
# =============================================================================


class WatcherState(Enum):
    IDLE = "idle"
    # A debounce timer is armed; further events do not re-arm or extend it.
    PENDING = "pending"


ADD_ACTIONS = {"create", "update", "start"}
REMOVE_ACTIONS = {"remove", "die", "destroy"}

EventHandler = Callable[[PlatformEvent], None]


class EventWatcher:
    """Debounces Docker lifecycle events into full reconciliations.

    The first event seen while idle arms a timer for ``debounce_seconds``.
    Events arriving while the timer is armed are absorbed. When the timer
    fires the reconciler runs once and the watcher returns to idle. Events
    never cause records to be deleted.
    """

    def __init__(
        self,
        *,
        reconciler: Reconciler,
        workload_source: WorkloadSource,
        debounce_seconds: float = 5.0,
        reporter: Optional[MetricsReporter] = None,
        logger: Optional[logging.Logger] = None,
        timer_factory: Callable[[float, Callable[[], None]], Any] = threading.Timer,
    ):
        self.reconciler = reconciler
        self.workload_source = workload_source
        self.debounce_seconds = debounce_seconds
        self.reporter = reporter if reporter is not None else reconciler.reporter
        self.logger = logger or module_logger
        self._timer_factory = timer_factory
        self._state_lock = threading.Lock()
        self._state = WatcherState.IDLE
        self._timer: Optional[Any] = None

    @property
    def state(self) -> WatcherState:
        with self._state_lock:
            return self._state

    def watch(self, stop_event: threading.Event) -> None:
        """Consume events until ``stop_event`` is set.

        Returns normally on cancellation. Raises SubscriptionError if the
        event stream fails or ends on its own.
        """
        self.logger.info(
            f"Starting event watcher (mode={self.workload_source.mode.value}, "
            f"debounce={self.debounce_seconds:g}s)"
        )
        try:
            self._consume(stop_event, self.handle_event)
        finally:
            self.stop()
        self.logger.info("Event watcher stopped")

    def watch_with_handler(self, stop_event: threading.Event, handler: EventHandler) -> None:
        """Like ``watch`` but hands every event to ``handler`` instead of debouncing."""
        self.logger.info(
            f"Starting event watcher with custom handler (mode={self.workload_source.mode.value})"
        )
        self._consume(stop_event, handler)
        self.logger.info("Event watcher stopped")

    def _consume(self, stop_event: threading.Event, handler: EventHandler) -> None:
        subscription = self.workload_source.subscribe()
        done = threading.Event()
        closer = threading.Thread(
            target=_close_on_stop,
            args=(stop_event, done, subscription),
            name="event-stream-closer",
            daemon=True,
        )
        closer.start()

        try:
            for event in subscription:
                if stop_event.is_set():
                    return
                handler(event)
        except SubscriptionError as e:
            if stop_event.is_set():
                return
            self.logger.error(f"Event stream error: {e}")
            raise
        finally:
            done.set()
            subscription.close()

        if not stop_event.is_set():
            raise SubscriptionError("event stream ended unexpectedly")

    def handle_event(self, event: PlatformEvent) -> None:
        """Classify and count an event, then schedule a debounced reconciliation."""
        self.reporter.record_event(event.type, event.action)
        self.logger.debug(
            f"Received event type={event.type} action={event.action} "
            f"actor={event.actor_id} attributes={event.attributes}"
        )

        kind = "service" if event.type == "service" else "container"
        if event.action in ADD_ACTIONS or event.action in REMOVE_ACTIONS:
            self.logger.info(f"{kind.capitalize()} event '{event.action}': {event.actor_name}")
        if event.action in REMOVE_ACTIONS:
            self.logger.debug(
                f"Orphan cleanup disabled - DNS records for {kind} '{event.actor_name}' are kept"
            )

        self._schedule()

    def _schedule(self) -> None:
        with self._state_lock:
            if self._state is WatcherState.PENDING:
                self.logger.debug("Reconciliation already pending, event coalesced")
                return
            self._state = WatcherState.PENDING
            timer = self._timer_factory(self.debounce_seconds, self._on_timer_fired)
            timer.daemon = True
            self._timer = timer
            timer.start()
        self.logger.debug(f"Reconciliation scheduled in {self.debounce_seconds:g}s")

    def _on_timer_fired(self) -> None:
        self.logger.debug("Debounce timer fired, triggering full reconciliation")
        try:
            result = self.reconciler.reconcile()
        except CompanionError as e:
            self.logger.error(f"Reconciliation failed: {e}")
        else:
            self.logger.info(
                f"Reconciliation triggered by events: records_created={result.records_created} "
                f"records_existed={result.records_existed} errors={len(result.errors)}"
            )
        finally:
            with self._state_lock:
                self._state = WatcherState.IDLE
                self._timer = None

    def stop(self) -> None:
        """Cancel any armed timer and return to idle."""
        with self._state_lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._state = WatcherState.IDLE


def _close_on_stop(
    stop_event: threading.Event, done: threading.Event, subscription: EventSubscription
) -> None:
    while not done.is_set():
        if stop_event.wait(0.2):
            subscription.close()
            return
