"""Constants and configuration loading for latencyprobe."""

from __future__ import annotations

import ipaddress
from typing import Mapping, Optional
from urllib.parse import urlparse

from latencyprobe import __version__
from latencyprobe.errors import ConfigError

# Default measurement settings
DEFAULT_ITERATIONS = 10
DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_METHOD = "HEAD"
DEFAULT_GRACE_PERIOD = 2.0
DEFAULT_TARGET_URLS = ["https://www.example.com"]

# Accepted ranges
MIN_ITERATIONS = 1
MAX_ITERATIONS = 100
MIN_TIMEOUT = 1.0
MAX_TIMEOUT = 300.0

# Scheduler
MAX_CONCURRENCY = 32

# User agent for HTTP requests
USER_AGENT = f"latencyprobe/{__version__}"

# Domain resolved when validating a DNS strategy
TEST_DOMAIN = "google.com"
DNS_PORT = 53
DOH_CONTENT_TYPE = "application/dns-json"

# Performance level thresholds (milliseconds)
GOOD_THRESHOLD_MS = 1000.0
MODERATE_THRESHOLD_MS = 3000.0

# Ranking weights
SPEED_WEIGHT = 0.40
RELIABILITY_WEIGHT = 0.35
CONSISTENCY_WEIGHT = 0.25

# Summary warning thresholds
LOW_SUCCESS_RATE = 95.0
HIGH_JITTER_MS = 100.0
SIGNIFICANCE_THRESHOLD = 1.96

# Exit code boundary on the aggregate success rate
PASSING_SUCCESS_RATE = 50.0

# Environment variables read when the matching CLI flag is absent
ENV_TARGET_URLS = "TARGET_URLS"
ENV_DNS_SERVERS = "DNS_SERVERS"
ENV_DOH_PROVIDERS = "DOH_PROVIDERS"
ENV_TEST_COUNT = "TEST_COUNT"
ENV_TIMEOUT_SECONDS = "TIMEOUT_SECONDS"
ENV_ENABLE_COLOR = "ENABLE_COLOR"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def split_list(value: str) -> list[str]:
    """Split a comma-separated value, dropping blanks."""
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid {name} value {value!r}: expected true or false")


def _parse_number(name: str, value: str, cast):
    try:
        return cast(value.strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid {name} value {value!r}: {exc}") from exc


def config_from_env(environ: Mapping[str, str]) -> dict:
    """Read configuration overrides from environment variables.

    Returns a dict of :class:`~latencyprobe.models.Config` field values for
    the variables that are set.  Malformed values raise :class:`ConfigError`.
    """
    overrides: dict = {}
    if ENV_TARGET_URLS in environ:
        overrides["urls"] = split_list(environ[ENV_TARGET_URLS])
    if ENV_DNS_SERVERS in environ:
        overrides["dns_servers"] = split_list(environ[ENV_DNS_SERVERS])
    if ENV_DOH_PROVIDERS in environ:
        overrides["doh_providers"] = split_list(environ[ENV_DOH_PROVIDERS])
    if ENV_TEST_COUNT in environ:
        overrides["iterations"] = _parse_number(ENV_TEST_COUNT, environ[ENV_TEST_COUNT], int)
    if ENV_TIMEOUT_SECONDS in environ:
        overrides["timeout"] = _parse_number(ENV_TIMEOUT_SECONDS, environ[ENV_TIMEOUT_SECONDS], float)
    if ENV_ENABLE_COLOR in environ:
        overrides["enable_color"] = _parse_bool(ENV_ENABLE_COLOR, environ[ENV_ENABLE_COLOR])
    return overrides


def validate_url(url: str, *, schemes: tuple[str, ...] = ("http", "https"), what: str = "target URL") -> None:
    """Raise :class:`ConfigError` unless *url* is absolute with an allowed scheme."""
    if not url or not url.strip():
        raise ConfigError(f"{what.capitalize()} cannot be empty")
    parsed = urlparse(url)
    if parsed.scheme not in schemes:
        allowed = "/".join(schemes)
        raise ConfigError(f"Invalid {what} {url!r}: scheme must be {allowed}")
    if not parsed.hostname:
        raise ConfigError(f"Invalid {what} {url!r}: missing host")
    try:
        parsed.port
    except ValueError as exc:
        raise ConfigError(f"Invalid {what} {url!r}: {exc}") from exc


def validate_ip(value: str) -> str:
    """Return the normalised form of an IP address or raise :class:`ConfigError`."""
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError as exc:
        raise ConfigError(f"Invalid DNS server IP address: {value!r}") from exc


def validate_config(config) -> None:
    """Check every invariant of a :class:`~latencyprobe.models.Config`."""
    if not config.urls:
        raise ConfigError("At least one target URL is required")
    for url in config.urls:
        validate_url(url)

    for server in config.dns_servers:
        if not server or not server.strip():
            raise ConfigError("DNS server cannot be empty")
        validate_ip(server)

    for doh_url in config.doh_providers:
        validate_url(doh_url, schemes=("https",), what="DoH provider URL")

    if not MIN_ITERATIONS <= config.iterations <= MAX_ITERATIONS:
        raise ConfigError(
            f"Test count must be between {MIN_ITERATIONS} and {MAX_ITERATIONS}, got {config.iterations}"
        )
    if not MIN_TIMEOUT <= config.timeout <= MAX_TIMEOUT:
        raise ConfigError(
            f"Timeout must be between {MIN_TIMEOUT:g} and {MAX_TIMEOUT:g} seconds, got {config.timeout:g}"
        )
    if config.concurrency is not None and config.concurrency < 1:
        raise ConfigError("Concurrency must be at least 1")
    if config.run_deadline is not None and config.run_deadline <= 0:
        raise ConfigError("Run deadline must be positive")
    if config.max_redirects < 0:
        raise ConfigError("Redirect limit cannot be negative")
    if config.method.upper() not in ("HEAD", "GET"):
        raise ConfigError(f"Unsupported probe method: {config.method!r}")


def resolve_concurrency(cell_count: int, requested: Optional[int] = None) -> int:
    """Pick the in-flight probe limit for *cell_count* cells."""
    if requested is not None:
        return max(1, requested)
    return max(1, min(cell_count, MAX_CONCURRENCY))
