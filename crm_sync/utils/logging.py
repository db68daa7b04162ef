"""Logging configuration."""

import logging
import sys
from typing import Any, Dict

from pythonjsonlogger import jsonlogger

from crm_sync.core.config import get_settings


class ServiceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON log formatter stamping service metadata on every record."""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        settings = get_settings()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = settings.service_name
        log_record["environment"] = settings.environment


def setup_logging():
    """Setup logging configuration."""
    settings = get_settings()

    # Clear existing handlers
    logging.root.handlers = []

    handler = logging.StreamHandler(sys.stdout)

    if settings.log_format == "json":
        handler.setFormatter(ServiceJsonFormatter("%(asctime)s %(message)s"))
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )

    logging.root.setLevel(settings.log_level)
    logging.root.addHandler(handler)

    logging.getLogger("uvicorn").setLevel(settings.log_level)
    logging.getLogger("fastapi").setLevel(settings.log_level)

    # Reduce noise from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
