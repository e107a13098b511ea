"""
Structured Logging Setup

Consistent logging configuration across the controller services.
Uses JSON format for structured logs in production.
"""

import logging
import sys
import os
from datetime import datetime, timezone
import json


# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = (
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "service",
    "message", "taskName",
)


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

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "scheduling", "safety")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"canopy.{service_name}")
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Keep propagation on so test harnesses (caplog) still see records
    logger.propagate = True

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Level and format can be overridden with CANOPY_LOG_LEVEL and
    CANOPY_LOG_FORMAT ("json" or "text").
    """
    log_level = os.environ.get("CANOPY_LOG_LEVEL", "INFO")
    json_format = os.environ.get("CANOPY_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def log_transition(
    logger: logging.LoggerAdapter,
    schedule_id: str,
    zone_id: str,
    from_status: str,
    to_status: str,
    reason: str | None = None,
) -> None:
    """Log a schedule status transition"""
    suffix = f" ({reason})" if reason else ""
    logger.info(
        f"Schedule {schedule_id} on {zone_id}: {from_status} -> {to_status}{suffix}",
        extra={
            "schedule_id": schedule_id,
            "zone_id": zone_id,
            "from_status": from_status,
            "to_status": to_status,
            "reason": reason,
        },
    )


def log_control_tick(
    logger: logging.LoggerAdapter,
    facility_id: str,
    active_count: int,
    pending_count: int,
    transitions: int,
    execution_time_ms: float,
) -> None:
    """Log control loop execution"""
    logger.debug(
        f"Control tick {facility_id}: active={active_count}, pending={pending_count}, "
        f"transitions={transitions}, exec={execution_time_ms:.0f}ms",
        extra={
            "facility_id": facility_id,
            "active_count": active_count,
            "pending_count": pending_count,
            "transitions": transitions,
            "execution_time_ms": execution_time_ms,
        },
    )


def log_alarm(
    logger: logging.LoggerAdapter,
    facility_id: str,
    severity: str,
    message: str,
    zone_id: str | None = None,
) -> None:
    """Log an alarm event"""
    log_method = {
        "info": logger.info,
        "warning": logger.warning,
        "major": logger.error,
        "critical": logger.critical,
    }.get(severity, logger.warning)

    log_method(
        f"ALARM [{severity.upper()}] {facility_id}: {message}",
        extra={
            "facility_id": facility_id,
            "severity": severity,
            "zone_id": zone_id,
        },
    )
