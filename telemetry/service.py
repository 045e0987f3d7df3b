"""
Telemetry service for structured logging and observability.

This module provides structured JSON logging with request correlation,
optional OpenTelemetry tracing for Redis calls, custom metrics recording,
and a connection-state observer for the session store.
"""

import logging
import json
import sys
from datetime import datetime
from typing import Any, Optional, Dict
from contextvars import ContextVar

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per log line.

    Every entry carries timestamp, level, message, logger and the request id
    of the HTTP request being served (empty for background tasks such as the
    reconnect loop). Keys from ``extra={"extra_data": {...}}`` are merged in.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "request_id": request_id_var.get(""),
        }

        if record.module:
            log_data["module"] = record.module
        if record.funcName and record.funcName != "<module>":
            log_data["function"] = record.funcName
        if record.lineno:
            log_data["line"] = record.lineno

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_data.update(extra_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            log_data["stack_trace"] = record.stack_info

        return json.dumps(log_data, default=str)


class TelemetryService:
    """
    Logging, metrics and tracing for the session store service.

    Metrics are emitted as structured debug log entries. Tracing is enabled
    only when ``otel_endpoint`` is set and the ``tracing`` extra is installed.
    """

    def __init__(self, settings: Optional[Any] = None):
        self.settings = settings
        self.tracer = None
        self._logger = None
        self._setup_logging()
        self._setup_tracing()

    def _setup_logging(self) -> None:
        """
        Configure structured JSON logging on the root logger.
        """
        log_level_str = "INFO"
        if self.settings and hasattr(self.settings, "log_level"):
            log_level_str = self.settings.log_level

        log_level = getattr(logging, log_level_str.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)

        # Remove existing handlers to avoid duplicate logs
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(log_level)
        stdout_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(stdout_handler)

        self._logger = logging.getLogger("telemetry")
        self._logger.info("Telemetry service initialized", extra={
            "extra_data": {"log_level": log_level_str}
        })

    def _setup_tracing(self) -> None:
        """
        Configure OpenTelemetry tracing when an OTEL endpoint is configured.
        """
        if not self.settings:
            return

        otel_endpoint = getattr(self.settings, "otel_endpoint", None)
        if not otel_endpoint:
            self._logger.debug("OpenTelemetry endpoint not configured, tracing disabled")
            return

        try:
            from opentelemetry import trace
            from opentelemetry.sdk.trace import TracerProvider
            from opentelemetry.sdk.trace.export import BatchSpanProcessor
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            from opentelemetry.sdk.resources import Resource, SERVICE_NAME

            service_name = getattr(self.settings, "otel_service_name", "session-store")

            provider = TracerProvider(resource=Resource(attributes={
                SERVICE_NAME: service_name
            }))
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otel_endpoint)))
            trace.set_tracer_provider(provider)

            self.tracer = trace.get_tracer(service_name)

            self._logger.info("OpenTelemetry tracing configured", extra={
                "extra_data": {
                    "otel_endpoint": otel_endpoint,
                    "service_name": service_name
                }
            })
        except ImportError as e:
            self._logger.warning(
                "OpenTelemetry packages not installed, tracing disabled",
                extra={"extra_data": {"error": str(e)}}
            )

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """
        Record a custom metric.

        Args:
            name: Name of the metric
            value: Metric value
            tags: Optional tags for metric dimensions
        """
        metric_data = {
            "metric_name": name,
            "metric_value": value,
        }

        if tags:
            metric_data["tags"] = tags

        self._logger.debug(
            f"Metric: {name}={value}",
            extra={"extra_data": metric_data}
        )

    def observe_connection(self, manager: Any) -> None:
        """
        Subscribe to a ConnectionManager and record every state transition.

        Args:
            manager: The session store ConnectionManager to observe
        """
        def _on_transition(previous: Any, current: Any) -> None:
            self.record_metric(
                "session_store.connection_state",
                1.0,
                tags={"from": previous.value, "to": current.value}
            )
            self.record_metric(
                "session_store.reconnect_attempts",
                float(manager.reconnect_attempts)
            )

        manager.add_listener(_on_transition)

    def create_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        """Span context manager named ``name``; a no-op when tracing is off."""
        if self.tracer is None:
            return _NoOpSpanContextManager()
        return self.tracer.start_as_current_span(name, attributes=attributes)

    def redis_span(self, operation: str, attributes: Optional[Dict[str, Any]] = None):
        """
        Client span around one session store command sent to Redis.

        Args:
            operation: Session store operation (load, save, count_sessions, ...)
            attributes: Extra span attributes, merged over the Redis defaults
        """
        span_attributes: Dict[str, Any] = {
            "db.system": "redis",
            "db.operation": operation,
            "span.kind": "client",
        }
        if attributes:
            span_attributes.update(attributes)
        return self.create_span(f"redis.{operation}", span_attributes)


class _NoOpSpanContextManager:
    """Stands in for a span when tracing is not configured."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass


# Global telemetry service instance
_telemetry_service: Optional[TelemetryService] = None


def get_telemetry_service() -> Optional[TelemetryService]:
    """
    Get the global telemetry service instance.

    Returns:
        The telemetry service instance, or None if not initialized
    """
    return _telemetry_service


def initialize_telemetry(settings: Optional[Any] = None) -> TelemetryService:
    """
    Initialize the global telemetry service.

    Args:
        settings: Application settings for configuration

    Returns:
        The initialized telemetry service
    """
    global _telemetry_service
    _telemetry_service = TelemetryService(settings)
    return _telemetry_service


def span_for(operation: str, attributes: Optional[Dict[str, Any]] = None):
    """Redis span for a session store operation, or a no-op before telemetry starts."""
    if _telemetry_service is None:
        return _NoOpSpanContextManager()
    return _telemetry_service.redis_span(operation, attributes)


def set_request_id(request_id: str) -> None:
    """
    Set the request ID for the current context.

    Args:
        request_id: The request ID to set
    """
    request_id_var.set(request_id)


def get_request_id() -> str:
    """
    Get the current request ID from context.

    Returns:
        The current request ID, or empty string if not set
    """
    return request_id_var.get("")
