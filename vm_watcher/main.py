#!/usr/bin/env python3
"""Entry point: ``vm-watcher`` console script / ``python -m vm_watcher``."""

import logging
import os
import socket
import sys

import kopf

# Registers the handlers with kopf.
from vm_watcher import handlers  # noqa: F401
from vm_watcher.config import load_settings
from vm_watcher.errors import ConfigurationError
from vm_watcher.logs import configure_logging


def main() -> int:
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        configure_logging(os.environ.get("LOG_LEVEL", "INFO").upper())
        logging.critical(
            "%s. Set GUACAMOLE_BASE_URL, GUACAMOLE_USERNAME and GUACAMOLE_PASSWORD.", exc
        )
        return 1

    configure_logging(settings.log_level)

    if settings.namespace:
        logging.info("VM watcher starting, watching namespace %s", settings.namespace)
    else:
        logging.info("VM watcher starting, watching VirtualMachines across all namespaces")
    logging.info("Guacamole at %s as %s", settings.guacamole_url, settings.guacamole_username)

    peering = {}
    if settings.peering:
        # Peering gives leader election between replicas.
        leader_id = os.environ.get("POD_NAME", socket.gethostname())
        logging.info("Configuring leader election with leader ID: %s", leader_id)
        peering = dict(peering_name=settings.peering, identity=leader_id, priority=0)

    kopf.run(
        standalone=not settings.peering,
        clusterwide=settings.namespace is None,
        namespaces=[settings.namespace] if settings.namespace else (),
        **peering,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
