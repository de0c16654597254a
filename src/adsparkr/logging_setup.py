from __future__ import annotations

import logging

from adsparkr.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install one stream handler on the package logger (idempotent)."""
    logger = logging.getLogger("adsparkr")
    logger.setLevel((level or settings.log_level).upper())
    if any(getattr(h, "_adsparkr", False) for h in logger.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._adsparkr = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
