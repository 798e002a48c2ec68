"""
Runtime configuration.

Values come from the process environment; a ``.env`` file next to the working
directory is loaded first for local development, the same way the operator
and gateway services pick up their credentials.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from vm_watcher.errors import ConfigurationError

logger = logging.getLogger(__name__)

REQUIRED_VARS = ("GUACAMOLE_BASE_URL", "GUACAMOLE_USERNAME", "GUACAMOLE_PASSWORD")


@dataclass(frozen=True)
class Settings:
    guacamole_url: str
    guacamole_username: str
    guacamole_password: str
    http_timeout: float = 30.0
    workers: int = 2
    reconcile_deadline: float = 60.0
    wait_for_running: float = 30.0
    retry_delay: float = 120.0
    kube_request_timeout: float = 10.0
    cluster_domain: str = "cluster.local"
    namespace: Optional[str] = None
    peering: Optional[str] = None
    log_level: str = "INFO"

    def __repr__(self) -> str:
        # Keep the password out of log lines that print the settings.
        return (
            f"Settings(guacamole_url={self.guacamole_url!r}, "
            f"guacamole_username={self.guacamole_username!r}, workers={self.workers}, "
            f"namespace={self.namespace!r}, peering={self.peering!r})"
        )


def _number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from *env* (defaults to ``os.environ``).

    Raises :class:`ConfigurationError` when a Guacamole credential is missing
    or a numeric setting does not parse.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    missing = [name for name in REQUIRED_VARS if not env.get(name)]
    if missing:
        raise ConfigurationError(f"{', '.join(missing)} env vars must be set")

    return Settings(
        guacamole_url=env["GUACAMOLE_BASE_URL"].rstrip("/"),
        guacamole_username=env["GUACAMOLE_USERNAME"],
        guacamole_password=env["GUACAMOLE_PASSWORD"],
        http_timeout=_number(env, "GUACAMOLE_HTTP_TIMEOUT", 30.0),
        workers=_number(env, "VM_WATCHER_WORKERS", 2, cast=int),
        reconcile_deadline=_number(env, "VM_WATCHER_RECONCILE_DEADLINE", 60.0),
        wait_for_running=_number(env, "VM_WATCHER_WAIT_FOR_RUNNING", 30.0),
        retry_delay=_number(env, "VM_WATCHER_RETRY_DELAY", 120.0),
        kube_request_timeout=_number(env, "KUBE_REQUEST_TIMEOUT", 10.0),
        cluster_domain=env.get("CLUSTER_DOMAIN") or "cluster.local",
        namespace=env.get("VM_WATCHER_NAMESPACE") or None,
        peering=env.get("VM_WATCHER_PEERING") or None,
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
