#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

Configures tracing for aiohttp client requests, sqlite cache access and the
gateway's own spans. When an Application Insights connection string is
provided, spans are exported to Azure Monitor; otherwise they stay in-process.

Environment variables:
  - APPLICATIONINSIGHTS_CONNECTION_STRING or AZURE_MONITOR_CONNECTION_STRING
  - OTEL_SERVICE_NAME (default: news-gateway)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
from typing import Optional
import asyncio

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

try:
    # Azure Monitor exporter is optional; only used when connection string is present
    from azure.monitor.opentelemetry.exporter import AzureMonitorTraceExporter  # type: ignore
    _AZURE_AVAILABLE = True
except ImportError:
    AzureMonitorTraceExporter = None  # type: ignore
    _AZURE_AVAILABLE = False

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger(__name__)


def _connection_string() -> Optional[str]:
    return os.environ.get("APPLICATIONINSIGHTS_CONNECTION_STRING") or os.environ.get(
        "AZURE_MONITOR_CONNECTION_STRING"
    )


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true":
        return
    if _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "news-gateway")
        env = os.environ.get("OTEL_ENVIRONMENT")
        attrs = {"service.name": svc}
        if env:
            attrs["deployment.environment"] = env

        # Reuse a provider installed by external auto-instrumentation
        existing = trace.get_tracer_provider()
        if isinstance(existing, TracerProvider):
            provider = existing
        else:
            provider = TracerProvider(resource=Resource.create(attrs))

        conn = _connection_string()
        if conn and _AZURE_AVAILABLE:
            try:
                exporter = AzureMonitorTraceExporter.from_connection_string(conn)  # type: ignore
                provider.add_span_processor(BatchSpanProcessor(exporter))
                _logger.info("Telemetry initialized: Azure Monitor trace exporter enabled (service=%s)", svc)
            except ValueError as e:
                _logger.warning("Telemetry init: failed to enable Azure exporter (%s); spans will not be exported", e)
        else:
            _logger.info("Telemetry initialized without exporter (service=%s); no spans will be exported", svc)
            if conn and not _AZURE_AVAILABLE:
                _logger.warning(
                    "Azure exporter package unavailable; install 'azure-monitor-opentelemetry-exporter'"
                )

        if not isinstance(existing, TracerProvider):
            trace.set_tracer_provider(provider)
        _provider = provider

        # Instrumentors raise if instrumented twice; that is harmless here
        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
            try:
                instrumentor.instrument()
            except Exception as e:  # noqa: BLE001
                _logger.debug("Telemetry: %s not instrumented: %s", type(instrumentor).__name__, e)

        _initialized = True

        def _shutdown():
            # TracerProvider.shutdown() flushes BatchSpanProcessor
            if _provider:
                _provider.shutdown()

        atexit.register(_shutdown)


def get_tracer(name: str = "news-gateway"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[callable] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to span_name or 'news-gateway')
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tname = tracer_name or name.split(".")[0] or "news-gateway"
        tracer = get_tracer(tname)

        def _set_attrs(span, args, kwargs):
            if not span:
                return
            try:
                if static_attrs:
                    for k, v in static_attrs.items():
                        span.set_attribute(k, v)
                if callable(attr_from_args):
                    dyn = attr_from_args(*args, **kwargs) or {}
                    for k, v in dyn.items():
                        if v is not None:
                            span.set_attribute(k, v)
            except Exception:  # noqa: BLE001
                # Never break the app on attribute setting
                pass

        def _record(span, exc):
            if span:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))

        if asyncio.iscoroutinefunction(func):

            async def _aw(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record(span, e)
                        raise

            _aw.__name__ = func.__name__
            _aw.__doc__ = func.__doc__
            _aw.__qualname__ = getattr(func, "__qualname__", func.__name__)
            return _aw

        def _w(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record(span, e)
                    raise

        _w.__name__ = func.__name__
        _w.__doc__ = func.__doc__
        _w.__qualname__ = getattr(func, "__qualname__", func.__name__)
        return _w

    return _decorator
