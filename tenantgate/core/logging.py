from __future__ import annotations

import logging
import logging.config

from tenantgate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; module loggers inherit the level.
    resolved = (level or get_settings().log_level).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": _LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": resolved, "handlers": ["console"]},
            # Keep access logs at warning so request noise does not bury security events.
            "loggers": {"uvicorn.access": {"level": "WARNING"}},
        }
    )
