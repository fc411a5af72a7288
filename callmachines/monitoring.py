"""
Monitoring and observability utilities for callmachines.

Provides standardized logging configuration and OpenTelemetry-based metrics.
"""

import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, Optional

# ─────────────────────────────────────────────────────────────────────────────
# Logging Configuration
# ─────────────────────────────────────────────────────────────────────────────

# Global logger registry
_loggers: Dict[str, logging.Logger] = {}
_logging_configured = False


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter.

    Escapes message content and includes exception info and any
    session/machine fields passed through ``extra``.
    """

    EXTRA_FIELDS = ("session_id", "machine_id", "state", "transition")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "time": self.formatTime(record, '%Y-%m-%dT%H:%M:%S'),
            "name": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        for field_name in self.EXTRA_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_entry[field_name] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Named log formats; any other value is used as a format string
LOG_FORMATS = {
    'standard': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    'simple': '%(levelname)s - %(message)s',
    'session': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
}


def _build_formatter(style: str) -> logging.Formatter:
    if style == 'json':
        return JSONFormatter()
    return logging.Formatter(LOG_FORMATS.get(style, style), datefmt=DATE_FORMAT)


def _file_handler(log_dir: str, formatter: logging.Formatter) -> logging.Handler:
    """Per-process log file named after the PID and start time."""
    from datetime import datetime

    os.makedirs(log_dir, exist_ok=True)
    started = datetime.now().strftime('%Y%m%d_%H%M%S')
    path = os.path.join(log_dir, f"callmachines_{os.getpid()}_{started}.log")
    handler = logging.FileHandler(path, mode='a', encoding='utf-8')
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    level: Optional[str] = None,
    format: Optional[str] = None,
    force: bool = False
) -> None:
    """
    Configure logging for the router process or the CLI.

    Args:
        level: Log level name. Defaults to CALLMACHINES_LOG_LEVEL or INFO.
        format: 'standard', 'simple', 'session', 'json' or a custom
                format string. Defaults to CALLMACHINES_LOG_FORMAT or
                'standard'.
        force: Replace handlers installed by an earlier call.

    Environment Variables:
        CALLMACHINES_LOG_LEVEL: Default log level
        CALLMACHINES_LOG_FORMAT: Default format
        CALLMACHINES_LOG_DIR: Also write to a per-process file in this directory

    Example:
        >>> from callmachines import setup_logging
        >>> setup_logging(level='DEBUG', format='json')
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    level = (level or os.getenv('CALLMACHINES_LOG_LEVEL', 'INFO')).upper()
    formatter = _build_formatter(format or os.getenv('CALLMACHINES_LOG_FORMAT', 'standard'))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    if force:
        root_logger.handlers.clear()

    # stdout carries CLI output (DOT graphs, JSON results)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    log_dir = os.getenv('CALLMACHINES_LOG_DIR')
    if log_dir:
        file_handler = _file_handler(log_dir, formatter)
        root_logger.addHandler(file_handler)
        root_logger.info(f"Logging to file: {file_handler.baseFilename}")

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Loggers are plain ``logging`` loggers; configuration is left to
    :func:`setup_logging` so that embedding applications keep control of
    their handlers.

    Example:
        >>> from callmachines import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Router started")
    """
    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)
    return _loggers[name]


# ─────────────────────────────────────────────────────────────────────────────
# Metrics with OpenTelemetry
# ─────────────────────────────────────────────────────────────────────────────

# OpenTelemetry is an optional dependency (callmachines[metrics])
_otel_available = False
_meter = None
_metrics_init_attempted = False
_cached_histograms: Dict[str, Any] = {}

try:
    from opentelemetry import metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import (
        ConsoleMetricExporter,
        PeriodicExportingMetricReader,
    )
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME
    _otel_available = True
except ImportError:
    _otel_available = False


def _init_metrics() -> None:
    """Initialize OpenTelemetry metrics if enabled and available."""
    global _meter, _metrics_init_attempted

    _metrics_init_attempted = True
    logger = get_logger(__name__)

    enabled = os.getenv('CALLMACHINES_METRICS_ENABLED', 'false').lower() in ('true', '1', 'yes')
    if not enabled:
        return

    if not _otel_available:
        logger.warning(
            "Metrics enabled but OpenTelemetry not available. "
            "Install with: pip install callmachines[metrics]"
        )
        return

    service_name = os.getenv('OTEL_SERVICE_NAME', 'callmachines')
    resource = Resource(attributes={SERVICE_NAME: service_name})

    exporter_type = os.getenv('OTEL_METRICS_EXPORTER', 'console').lower()
    if exporter_type == 'console':
        exporter = ConsoleMetricExporter()
    else:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        exporter = OTLPMetricExporter(endpoint=os.getenv('OTEL_EXPORTER_OTLP_ENDPOINT'))

    reader = PeriodicExportingMetricReader(
        exporter=exporter,
        export_interval_millis=int(os.getenv('OTEL_METRIC_EXPORT_INTERVAL', '60000'))
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    _meter = metrics.get_meter(__name__)

    logger.info(f"OpenTelemetry metrics enabled for service: {service_name}")


def get_meter():
    """
    Get the OpenTelemetry meter for creating custom metrics.

    Returns:
        OpenTelemetry Meter instance or None if metrics are disabled
    """
    if not _metrics_init_attempted:
        _init_metrics()
    return _meter


def _record_duration(operation_name: str, duration_ms: float, attributes: Dict[str, Any]) -> None:
    meter = get_meter()
    if not meter:
        return
    cache_key = f"callmachines.{operation_name}.duration"
    if cache_key not in _cached_histograms:
        _cached_histograms[cache_key] = meter.create_histogram(
            cache_key,
            unit="ms",
            description=f"Duration of {operation_name}"
        )
    _cached_histograms[cache_key].record(duration_ms, attributes)


@contextmanager
def track_operation(operation_name: str, **attributes):
    """
    Track duration of a synchronous operation.

    Example:
        >>> with track_operation("compile", machine="ivr_demo"):
        ...     compiled = compile_machine(definition)
    """
    start_time = time.time()
    status = "success"
    try:
        yield
    except Exception as e:
        status = "error"
        attributes["error_type"] = type(e).__name__
        raise
    finally:
        duration_ms = (time.time() - start_time) * 1000
        _record_duration(operation_name, duration_ms, {**attributes, "status": status})


@asynccontextmanager
async def track_async_operation(operation_name: str, **attributes):
    """
    Track duration of an awaited operation (external call, control op).

    Example:
        >>> async with track_async_operation("external_call", api="lookup"):
        ...     response = await client.request(...)
    """
    start_time = time.time()
    status = "success"
    try:
        yield
    except Exception as e:
        status = "error"
        attributes["error_type"] = type(e).__name__
        raise
    finally:
        duration_ms = (time.time() - start_time) * 1000
        _record_duration(operation_name, duration_ms, {**attributes, "status": status})


__all__ = [
    "JSONFormatter",
    "setup_logging",
    "get_logger",
    "get_meter",
    "track_operation",
    "track_async_operation",
]
