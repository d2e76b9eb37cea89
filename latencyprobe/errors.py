"""Error taxonomy for latencyprobe.

Every failure the engine can observe maps onto one :class:`ErrorKind`.
Probe-level errors are recoverable and end up as non-success samples;
configuration errors abort a run before any request is sent.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    CONFIG = "config"
    VALIDATION = "validation"
    DNS_RESOLUTION = "dns_resolution"
    NETWORK = "network"
    HTTP_REQUEST = "http_request"
    TIMEOUT = "timeout"
    PARSE = "parse"
    IO = "io"
    STATISTICS = "statistics"
    INTERNAL = "internal"


_RECOVERABLE = {
    ErrorKind.DNS_RESOLUTION,
    ErrorKind.NETWORK,
    ErrorKind.HTTP_REQUEST,
    ErrorKind.TIMEOUT,
}


def is_recoverable_kind(kind: ErrorKind | None) -> bool:
    return kind in _RECOVERABLE


# CLI exit codes
EXIT_OK = 0
EXIT_OPERATIONAL_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERNAL_ERROR = 3


class ProbeError(Exception):
    """Base class for all classified latencyprobe errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    label = "Internal error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.label}: {self.message}"

    @property
    def is_recoverable(self) -> bool:
        return is_recoverable_kind(self.kind)

    @property
    def exit_code(self) -> int:
        if self.kind in (ErrorKind.CONFIG, ErrorKind.VALIDATION):
            return EXIT_CONFIG_ERROR
        if self.is_recoverable:
            return EXIT_OPERATIONAL_FAILURE
        return EXIT_INTERNAL_ERROR


class ConfigError(ProbeError):
    kind = ErrorKind.CONFIG
    label = "Configuration error"


class ValidationError(ProbeError):
    kind = ErrorKind.VALIDATION
    label = "Validation error"


class DnsResolutionError(ProbeError):
    kind = ErrorKind.DNS_RESOLUTION
    label = "DNS resolution error"


class NetworkError(ProbeError):
    kind = ErrorKind.NETWORK
    label = "Network error"


class HttpRequestError(ProbeError):
    kind = ErrorKind.HTTP_REQUEST
    label = "HTTP request error"


class ProbeTimeoutError(ProbeError):
    kind = ErrorKind.TIMEOUT
    label = "Timeout error"


class IoError(ProbeError):
    kind = ErrorKind.IO
    label = "I/O error"


class StatisticsError(ProbeError):
    kind = ErrorKind.STATISTICS
    label = "Statistics error"


class InternalError(ProbeError):
    kind = ErrorKind.INTERNAL
    label = "Internal error"
