"""Exception classes raised by the watcher."""

from __future__ import annotations

from typing import Optional


class VMWatcherError(Exception):
    """Base exception for the watcher."""

    pass


class ConfigurationError(VMWatcherError):
    """Required configuration is missing or invalid."""

    pass


class ClusterAPIError(VMWatcherError):
    """A read or write against the Kubernetes API failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message if status is None else f"{message} (HTTP {status})")


class ConflictError(ClusterAPIError):
    """Optimistic-concurrency retries on a resource were exhausted."""

    def __init__(self, message: str):
        super().__init__(message, status=409)


class ResolutionError(VMWatcherError):
    """The endpoint of a VM could not be determined."""

    pass


class GatewayError(VMWatcherError):
    """Base exception for Guacamole API failures."""

    pass


class AuthenticationError(GatewayError):
    """Guacamole refused or failed the token request."""

    pass


class GatewayAPIError(GatewayError):
    """Guacamole answered with a non-success status."""

    def __init__(self, message: str, status: int):
        self.status = status
        super().__init__(f"{message} (HTTP {status})")


class TransportError(GatewayError):
    """The request to Guacamole never completed (network error or timeout)."""

    pass
