import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Dict, Optional

import structlog

from .config import Settings

# Record attributes copied into each JSON line when a caller supplies them
OPERATION_FIELDS = ("component", "operation", "status", "duration_ms", "params", "error")

# Operation statuses that log above INFO; any error text also forces ERROR
STATUS_LEVELS = {"failed": logging.ERROR, "partial": logging.WARNING}


class StructuredJsonFormatter(logging.Formatter):
    """Render each record as one JSON object; operation fields come from `extra`"""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        data = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name,
            "status": "info",
            "message": record.getMessage(),
        }

        for field in OPERATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "" and value != {}:
                data[field] = value

        if record.exc_info:
            data["status"] = "error"
            data["error"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """Adapter that tags records with their component and sync operation"""

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {"component": logger.name})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def log_operation(self,
                      operation: str,
                      params: Optional[Dict[str, Any]] = None,
                      status: str = "started",
                      duration_ms: Optional[int] = None,
                      error: Optional[str] = None,
                      message: Optional[str] = None) -> None:
        level = logging.ERROR if error else STATUS_LEVELS.get(status, logging.INFO)
        self.log(
            level,
            message or f"Operation {operation} {status}",
            extra={
                "operation": operation,
                "params": params,
                "status": status,
                "duration_ms": duration_ms,
                "error": error,
            }
        )


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name))


def setup_logging(settings: Settings, log_to_file: bool = True) -> None:
    """Configure logging with JSON format and daily rotation"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    root.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root.level)
    console_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(console_handler)

    if log_to_file:
        os.makedirs(settings.log_dir, exist_ok=True)
        log_filename = os.path.join(
            settings.log_dir,
            f"sync_{datetime.now().strftime('%Y%m%d')}.log"
        )
        file_handler = TimedRotatingFileHandler(
            filename=log_filename,
            when='midnight',
            interval=1,
            backupCount=30,  # Keep 30 days of logs
            encoding='utf-8'
        )
        file_handler.suffix = "%Y%m%d.log"
        file_handler.setLevel(root.level)
        file_handler.setFormatter(StructuredJsonFormatter())
        root.addHandler(file_handler)

    # structlog loggers (RPC client) render key/value pairs into the same handlers
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event", "component"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def log_summary(component: str, mode: str, records_processed: int, duration_seconds: float) -> None:
    """Log a summary line for a completed sync pass"""
    logger = get_logger(component)
    logger.log_operation(
        operation="sync_summary",
        params={"mode": mode},
        status="completed",
        duration_ms=int(duration_seconds * 1000),
        message=f"Processed {records_processed} transactions in {mode} mode"
    )
