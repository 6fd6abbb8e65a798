"""Logging setup driven by ``log_level`` / ``log_format`` settings."""

import json
import logging
import logging.config
from datetime import UTC, datetime

from noteai_rag.core.config import Settings, get_settings

_configured = False


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(settings: Settings | None = None, force: bool = False) -> None:
    """Install the root handler once.

    Args:
        settings: Settings to read level and format from (defaults to cached settings)
        force: Reconfigure even if logging was already set up
    """
    global _configured

    if _configured and not force:
        return

    settings = settings or get_settings()
    level = settings.log_level.upper()
    formatter = "json" if settings.log_format == "json" else "console"

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "console": {
                    "format": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "json": {"()": JsonFormatter},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": formatter,
                    "level": level,
                    "stream": "ext://sys.stdout",
                },
            },
            "root": {"handlers": ["console"], "level": level},
        }
    )

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if level == "DEBUG" else logging.WARNING)

    _configured = True
