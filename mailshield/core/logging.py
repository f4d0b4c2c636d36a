from __future__ import annotations

import logging

from mailshield.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once per process; repeated calls are no-ops.
    global _configured
    if _configured:
        return
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=_LOG_FORMAT)
    # Keep provider HTTP chatter out of info-level logs (URLs carry message ids).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
