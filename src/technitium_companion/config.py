"""Configuration loading.

Values are read from environment variables. ``NAME_FILE`` may point at a
file holding the value instead (Docker secrets). An optional YAML file named
by ``COMPANION_CONFIG_PATH`` supplies defaults using lower-case keys, e.g.::

    technitium_url: http://dns.example.com:5380
    technitium_zone: example.com
    target_ip: 10.0.0.10
    exclude_pattern: "^test\\."

Environment variables always win over the YAML file.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300
DEFAULT_INCLUDE_PATTERN = ".*"
DEFAULT_DOCKER_HOST = "unix:///var/run/docker.sock"
DEFAULT_DOCKER_MODE = "auto"
DEFAULT_RECONCILE_ON_STARTUP = True
DEFAULT_DRY_RUN = False
DEFAULT_HEALTH_PORT = 8080
DEFAULT_LOG_LEVEL = "info"
DEFAULT_DEBOUNCE_SECONDS = 5.0
DEFAULT_TECHNITIUM_TIMEOUT_SECONDS = 30.0

DOCKER_MODES = ("auto", "swarm", "standalone")

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


class ConfigError(ValueError):
    """One or more configuration values are missing or invalid."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("configuration errors:\n  - " + "\n  - ".join(self.errors))


# =============================================================================
# Hostname Filter
# =============================================================================


@dataclass(frozen=True)
class HostnameFilter:
    """Include/exclude regex filter. Exclude always wins.

    Patterns are searched, not anchored; use ``^``/``$`` to anchor.
    """

    include: Optional[re.Pattern] = None
    exclude: Optional[re.Pattern] = None

    @classmethod
    def from_strings(cls, include: str = "", exclude: str = "") -> HostnameFilter:
        """Compile raw patterns. Raises re.error for invalid regexes."""
        return cls(
            include=re.compile(include or DEFAULT_INCLUDE_PATTERN),
            exclude=re.compile(exclude) if exclude else None,
        )

    def matches(self, hostname: str) -> bool:
        if self.include is not None and not self.include.search(hostname):
            return False
        if self.exclude is not None and self.exclude.search(hostname):
            return False
        return True


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class Config:
    technitium_url: str
    technitium_token: str
    technitium_zone: str
    target_ip: str
    ttl: int = DEFAULT_TTL
    hostname_filter: HostnameFilter = field(default_factory=HostnameFilter.from_strings)
    docker_host: str = DEFAULT_DOCKER_HOST
    docker_mode: str = DEFAULT_DOCKER_MODE
    reconcile_on_startup: bool = DEFAULT_RECONCILE_ON_STARTUP
    dry_run: bool = DEFAULT_DRY_RUN
    health_port: int = DEFAULT_HEALTH_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    technitium_timeout_seconds: float = DEFAULT_TECHNITIUM_TIMEOUT_SECONDS

    def matches_filters(self, hostname: str) -> bool:
        return self.hostname_filter.matches(hostname)


def _parse_bool(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return default


def _load_yaml_defaults(path: str) -> Dict[str, Any]:
    """Load the optional YAML config file. Missing file means no defaults."""
    if not path:
        return {}
    config_file = Path(path)
    if not config_file.is_file():
        logger.warning(f"Config file {path} not found, using environment only")
        return {}
    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError([f"COMPANION_CONFIG_PATH could not be loaded: {e}"]) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError([f"COMPANION_CONFIG_PATH must contain a mapping, got {type(data).__name__}"])
    return {str(k).lower(): v for k, v in data.items()}


class _Source:
    """Resolves a setting from env, NAME_FILE, then the YAML defaults."""

    def __init__(self, environ: Mapping[str, str], defaults: Mapping[str, Any]):
        self._environ = environ
        self._defaults = defaults
        self.errors: List[str] = []

    def get(self, key: str) -> str:
        value = self._environ.get(key, "")
        if value:
            return value.strip()

        file_path = self._environ.get(f"{key}_FILE", "")
        if file_path:
            try:
                return Path(file_path).read_text(encoding="utf-8").strip()
            except OSError as e:
                self.errors.append(f"{key}_FILE could not be read: {e}")
                return ""

        default = self._defaults.get(key.lower())
        if default is None:
            return ""
        if isinstance(default, bool):
            return "true" if default else "false"
        return str(default).strip()

    def required(self, key: str, message: str = "") -> str:
        value = self.get(key)
        if not value:
            self.errors.append(message or f"{key} is required")
        return value

    def integer(self, key: str, default: int, *, minimum: int, maximum: Optional[int] = None) -> int:
        raw = self.get(key)
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError as e:
            self.errors.append(f"{key} must be a valid integer: {e}")
            return default
        if value < minimum or (maximum is not None and value > maximum):
            if maximum is None:
                self.errors.append(f"{key} must be at least {minimum}")
            else:
                self.errors.append(f"{key} must be between {minimum} and {maximum}")
            return default
        return value

    def seconds(self, key: str, default: float) -> float:
        raw = self.get(key)
        if not raw:
            return default
        try:
            value = float(raw)
        except ValueError as e:
            self.errors.append(f"{key} must be a number: {e}")
            return default
        if value <= 0:
            self.errors.append(f"{key} must be greater than 0")
            return default
        return value

    def pattern(self, key: str, default: str = "") -> Optional[re.Pattern]:
        raw = self.get(key) or default
        if not raw:
            return None
        try:
            return re.compile(raw)
        except re.error as e:
            self.errors.append(f"{key} is not a valid regex: {e}")
            return None


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build a Config from the environment. Raises ConfigError listing every problem."""
    if environ is None:
        environ = os.environ

    defaults = _load_yaml_defaults(environ.get("COMPANION_CONFIG_PATH", ""))
    src = _Source(environ, defaults)

    technitium_url = src.required("TECHNITIUM_URL").rstrip("/")
    technitium_token = src.required(
        "TECHNITIUM_TOKEN", "TECHNITIUM_TOKEN or TECHNITIUM_TOKEN_FILE is required"
    )
    technitium_zone = src.required("TECHNITIUM_ZONE")

    target_ip = src.required("TARGET_IP")
    if target_ip:
        try:
            ipaddress.ip_address(target_ip)
        except ValueError:
            src.errors.append(f"TARGET_IP is not a valid IP address: {target_ip}")

    ttl = src.integer("TTL", DEFAULT_TTL, minimum=1)
    include = src.pattern("INCLUDE_PATTERN", DEFAULT_INCLUDE_PATTERN)
    exclude = src.pattern("EXCLUDE_PATTERN")

    docker_host = src.get("DOCKER_HOST") or DEFAULT_DOCKER_HOST
    docker_mode = (src.get("DOCKER_MODE") or DEFAULT_DOCKER_MODE).lower()
    if docker_mode not in DOCKER_MODES:
        src.errors.append("DOCKER_MODE must be 'auto', 'swarm', or 'standalone'")

    reconcile_on_startup = _parse_bool(
        src.get("RECONCILE_ON_STARTUP") or None, default=DEFAULT_RECONCILE_ON_STARTUP
    )
    dry_run = _parse_bool(src.get("DRY_RUN") or None, default=DEFAULT_DRY_RUN)

    health_port = src.integer("HEALTH_PORT", DEFAULT_HEALTH_PORT, minimum=1, maximum=65535)

    log_level = (src.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).lower()
    if log_level not in LOG_LEVELS:
        src.errors.append("LOG_LEVEL must be 'debug', 'info', 'warn', or 'error'")

    debounce_seconds = src.seconds("DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS)
    timeout_seconds = src.seconds("TECHNITIUM_TIMEOUT_SECONDS", DEFAULT_TECHNITIUM_TIMEOUT_SECONDS)

    if src.errors:
        raise ConfigError(src.errors)

    return Config(
        technitium_url=technitium_url,
        technitium_token=technitium_token,
        technitium_zone=technitium_zone,
        target_ip=target_ip,
        ttl=ttl,
        hostname_filter=HostnameFilter(include=include, exclude=exclude),
        docker_host=docker_host,
        docker_mode=docker_mode,
        reconcile_on_startup=reconcile_on_startup,
        dry_run=dry_run,
        health_port=health_port,
        log_level=log_level,
        debounce_seconds=debounce_seconds,
        technitium_timeout_seconds=timeout_seconds,
    )
