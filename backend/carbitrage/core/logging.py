from __future__ import annotations

import logging

from backend.carbitrage.core.settings import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Attach a single stream handler to the package logger (idempotent)."""
    global _configured
    package_logger = logging.getLogger("backend.carbitrage")
    package_logger.setLevel((level or settings.log_level).upper())
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    package_logger.addHandler(handler)
    _configured = True
