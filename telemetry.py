#!/usr/bin/env python3
"""
OpenTelemetry tracing for Feed Sentry, optionally exported to Azure Monitor.

URL checks, guarded fetches, feed syncs and image proxy requests open their
own spans; aiohttp client calls and sqlite3 queries are picked up by the
stock instrumentors. Spans only leave the process when an Application
Insights connection string is present, which keeps stdout clean for the CLI.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - APPLICATIONINSIGHTS_INSTRUMENTATIONKEY (legacy form)
  - OTEL_SERVICE_NAME (default: feed-sentry)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true turns everything off
"""

from __future__ import annotations

import os
import atexit
import asyncio
import inspect
import logging
import threading
from contextlib import contextmanager
from functools import wraps
from typing import Callable, Dict, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Installed through the "azure" extra
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_IMPORT_ERROR: Optional[str] = None
except ImportError as _imp_err:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_IMPORT_ERROR = repr(_imp_err)

DEFAULT_SERVICE_NAME = "feed-sentry"

_state_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def _connection_string() -> Optional[str]:
    for var in ("APPLICATIONINSIGHTS_CONNECTION_STRING", "AZURE_MONITOR_CONNECTION_STRING"):
        if os.environ.get(var):
            return os.environ[var]
    ikey = os.environ.get("APPLICATIONINSIGHTS_INSTRUMENTATIONKEY")
    return f"InstrumentationKey={ikey}" if ikey else None


def _build_resource(service_name: str) -> Resource:
    attributes: Dict[str, str] = {"service.name": service_name}
    deployment = os.environ.get("OTEL_ENVIRONMENT")
    if deployment:
        attributes["deployment.environment"] = deployment
    return Resource.create(attributes)


def _attach_exporter(provider: TracerProvider, service_name: str) -> bool:
    """Add an Azure Monitor batch processor when configured; True if spans will be exported."""
    conn = _connection_string()
    if not conn:
        _logger.debug("No Application Insights connection string; spans stay local (service=%s)", service_name)
        return False
    if AzureMonitorTraceExporter is None:
        _logger.warning(
            "Connection string set but 'azure-monitor-opentelemetry-exporter' is not installed: %s",
            _AZURE_IMPORT_ERROR,
        )
        return False
    try:
        exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
    except ValueError as e:
        _logger.warning("Invalid Application Insights connection string, spans will not be exported: %s", e)
        return False
    provider.add_span_processor(BatchSpanProcessor(exporter))
    _logger.info("Exporting spans to Azure Monitor (service=%s)", service_name)
    return True


def _instrument_libraries() -> None:
    AioHttpClientInstrumentor().instrument()
    # otelTraceID / otelSpanID on log records, format untouched
    LoggingInstrumentor().instrument(set_logging_format=False)
    SQLite3Instrumentor().instrument()


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Set up the tracer provider and instrument aiohttp, logging and sqlite3.

    Idempotent, and a no-op when DISABLE_TELEMETRY=true. A provider already
    installed by external auto-instrumentation is reused rather than replaced.
    """
    global _provider
    if telemetry_disabled():
        return
    with _state_lock:
        if _provider is not None:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        current = trace.get_tracer_provider()
        if isinstance(current, TracerProvider):
            provider = current
        else:
            provider = TracerProvider(resource=_build_resource(svc))
            trace.set_tracer_provider(provider)

        _attach_exporter(provider, svc)
        _instrument_libraries()

        _provider = provider
        atexit.register(shutdown_telemetry)


def shutdown_telemetry() -> None:
    """Flush pending spans; registered with atexit for short-lived commands."""
    if _provider is not None:
        _provider.shutdown()


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Decorator to run a function inside an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first segment of span_name)
        static_attrs: Attributes set on every span
        attr_from_args: Callable taking the wrapped call's (*args, **kwargs)
                        and returning extra attributes

    Exceptions are recorded on the span and re-raised. Async generators are
    returned undecorated since a span cannot follow a consumer across yields.
    """

    def _decorator(func):
        if inspect.isasyncgenfunction(func):
            return func

        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        def _attributes(args, kwargs) -> dict:
            attrs = dict(static_attrs or {})
            if attr_from_args is not None:
                try:
                    attrs.update(attr_from_args(*args, **kwargs) or {})
                except (TypeError, AttributeError, KeyError, IndexError) as e:
                    _logger.debug("Span attribute extraction failed for %s: %s", name, e)
            return {k: v for k, v in attrs.items() if v is not None}

        @contextmanager
        def _span(args, kwargs):
            with tracer.start_as_current_span(name, record_exception=False) as span:
                if span.is_recording():
                    span.set_attributes(_attributes(args, kwargs))
                try:
                    yield span
                except Exception as e:
                    if span.is_recording():
                        span.record_exception(e)
                        span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with _span(args, kwargs):
                    return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            with _span(args, kwargs):
                return func(*args, **kwargs)
        return wrapper

    return _decorator
