"""
Structured Logging Setup

Consistent logging configuration across all services.
Uses JSON format for structured logs in production.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER_ROOT = "meter_collector"

# Rotating file defaults (10 MB x 5 files)
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUP_COUNT = 5


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in (
                "name", "msg", "args", "levelname", "levelno", "pathname",
                "filename", "module", "exc_info", "exc_text", "stack_info",
                "lineno", "funcName", "created", "msecs", "relativeCreated",
                "thread", "threadName", "processName", "process", "service",
                "message", "taskName",
            ):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def _close_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None,
) -> logging.Logger:
    """
    Set up structured logging for the collector.

    Handlers are attached once, to the package logger. Module loggers
    (``meter_collector.<service>``) carry none of their own and propagate
    to it, so a log file is opened by exactly one handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)
        log_file: Optional path of a rotating log file

    Returns:
        The configured package logger
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(LOGGER_ROOT)
    logger.setLevel(numeric_level)

    # Replace (and close) handlers from a previous configuration
    _close_handlers(logger)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    The package logger is configured from the environment the first time
    any service asks for a logger; the CLI reconfigures it afterwards.
    """
    if not logging.getLogger(LOGGER_ROOT).handlers:
        setup_logging(
            log_level=os.environ.get("METER_COLLECTOR_LOG_LEVEL", "INFO"),
            json_format=os.environ.get("METER_COLLECTOR_LOG_FORMAT", "json").lower() == "json",
            log_file=os.environ.get("METER_COLLECTOR_LOG_FILE") or None,
        )

    logger = logging.getLogger(f"{LOGGER_ROOT}.{service_name}")
    return ServiceLoggerAdapter(logger, {"service": service_name})


def configure_service_loggers(
    log_level: str,
    json_format: bool,
    log_file: str | None = None,
) -> logging.Logger:
    """Re-apply logging settings after the config file is loaded"""
    root = setup_logging(log_level, json_format, log_file)

    # Module loggers defer to the package logger
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if name.startswith(f"{LOGGER_ROOT}.") and isinstance(logger, logging.Logger):
            _close_handlers(logger)
            logger.setLevel(logging.NOTSET)
            logger.propagate = True

    return root


def log_device_read(
    logger: logging.Logger,
    device_name: str,
    value: Any,
    success: bool = True,
    retry_count: int = 0,
    error: str | None = None,
) -> None:
    """Log a device register read outcome"""
    if success:
        logger.debug(
            f"Read {device_name} = {value} (retries={retry_count})",
            extra={"device": device_name, "value": value, "retry_count": retry_count},
        )
    else:
        logger.warning(
            f"Failed to read {device_name}: {error or 'unknown error'}",
            extra={"device": device_name, "retry_count": retry_count},
        )
