"""Logging and OpenTelemetry setup.

Provides:
- JSON-line log file with trace/span identifiers when a span is active
- Human-readable console output
- Log level from AppSettings (LOG_LEVEL)
- FastAPI request tracing
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider

_RESERVED_RECORD_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module", "lineno",
    "funcName", "created", "msecs", "relativeCreated", "thread", "threadName", "processName",
    "process", "exc_info", "exc_text", "stack_info", "taskName",
    "otelTraceID", "otelSpanID", "otelTraceSampled", "otelServiceName",
}

# Third-party loggers that flood DEBUG output
_NOISY_LOGGERS = ("httpx", "httpcore", "mcp.client", "sqlalchemy.engine", "duckdb")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        span = trace.get_current_span()
        if span is not None and span.is_recording():
            context = span.get_span_context()
            if context.is_valid:
                entry["trace_id"] = f"{context.trace_id:032x}"
                entry["span_id"] = f"{context.span_id:016x}"

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_FIELDS:
                entry[f"extra_{key}"] = value
        return json.dumps(entry, default=str)


class OpenTelemetryConfig:
    """Configure the tracer provider and root logging handlers."""

    def __init__(
        self,
        service_name: str = "toolhub",
        service_version: str = "0.0.0",
        log_level: str = "INFO",
        logs_dir: Optional[Path] = None,
    ) -> None:
        self.service_name = service_name
        self.service_version = service_version
        level = getattr(logging, (log_level or "INFO").upper(), None)
        self.log_level = level if isinstance(level, int) else logging.INFO

        if logs_dir is None:
            env_dir = os.getenv("APP_LOG_DIR")
            # toolhub/core/otel_config.py -> project root is 2 levels up
            logs_dir = Path(env_dir) if env_dir else Path(__file__).resolve().parents[2] / "logs"
        self.logs_dir = logs_dir
        self.log_file = self.logs_dir / "app.jsonl"

        self._setup_telemetry()
        self._setup_logging()

    def _setup_telemetry(self) -> None:
        resource = Resource.create({
            SERVICE_NAME: self.service_name,
            SERVICE_VERSION: self.service_version,
        })
        trace.set_tracer_provider(TracerProvider(resource=resource))

    def _setup_logging(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        root.setLevel(self.log_level)

        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        console.setLevel(self.log_level)
        root.addHandler(console)

        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
        except OSError as e:
            logging.getLogger(__name__).warning("JSON log file disabled, cannot write %s: %s", self.log_file, e)
        else:
            file_handler.setFormatter(JSONFormatter())
            file_handler.setLevel(self.log_level)
            root.addHandler(file_handler)

        if self.log_level > logging.DEBUG:
            for noisy in _NOISY_LOGGERS:
                logging.getLogger(noisy).setLevel(logging.WARNING)

        LoggingInstrumentor().instrument(set_logging_format=False)

    def instrument_fastapi(self, app) -> None:  # noqa: ANN001
        FastAPIInstrumentor.instrument_app(app)

    def get_log_file_path(self) -> Path:
        return self.log_file


def setup_opentelemetry(
    service_name: str,
    service_version: str,
    log_level: str = "INFO",
    logs_dir: Optional[Path] = None,
) -> OpenTelemetryConfig:
    """Configure telemetry and logging once for the process."""
    return OpenTelemetryConfig(service_name, service_version, log_level, logs_dir)
