"""Logging setup shared by the operator entry point and ``kopf run``."""
from __future__ import annotations

import logging
import os
import re
import socket
import sys


class SensitiveDataFilter(logging.Filter):
    """Mask Guacamole tokens and passwords in log messages.

    httpx logs full request URLs, and Guacamole takes its auth token as a
    query parameter.
    """

    SENSITIVE_PATTERNS = [
        (re.compile(r'password["\']?\s*[:=]\s*["\']?[^"\'}&\s]+', re.I), "password=***"),
        (re.compile(r'token["\']?\s*[:=]\s*["\']?[^"\'}&\s]+', re.I), "token=***"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            redacted = pattern.sub(replacement, redacted)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure logging with hostname and pod name for better traceability."""
    log_format = "%(asctime)s [%(levelname)s] [%(name)s] [%(hostname)s] [%(pod_name)s] %(message)s"

    hostname = socket.gethostname()
    pod_name = os.environ.get("POD_NAME", "unknown")

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=log_format,
        stream=sys.stdout,
    )

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.hostname = hostname
        record.pod_name = pod_name
        return record

    logging.setLogRecordFactory(record_factory)

    redactor = SensitiveDataFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(redactor)

    logging.info("Logging configured at %s level", level)
