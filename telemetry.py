#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

This module configures tracing for aiohttp client requests, sqlite3 calls and
key poller spans. Spans stay in-process unless OTEL_CONSOLE_EXPORT=true, in
which case they are printed by the console exporter (useful when debugging a
single poll run).

Environment variables:
  - OTEL_SERVICE_NAME (default: feed-poller)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans
  - DISABLE_TELEMETRY=true to fully disable

The module is safe to import multiple times; initialization is idempotent.
"""

from __future__ import annotations

import os
import atexit
import logging
import threading
import functools
from typing import Callable, Optional
import asyncio

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor

_init_lock = threading.Lock()
_initialized = False
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("FeedPoller.telemetry")


def _telemetry_disabled() -> bool:
    return os.environ.get("DISABLE_TELEMETRY", "false").lower() == "true"


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Initialize OpenTelemetry tracing and instrumentation.

    Safe to call multiple times. If DISABLE_TELEMETRY=true, it's a no-op.
    """
    global _initialized, _provider
    if _telemetry_disabled() or _initialized:
        return
    with _init_lock:
        if _initialized:
            return

        svc = service_name or os.environ.get("OTEL_SERVICE_NAME", "feed-poller")
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
            trace.set_tracer_provider(provider)
        _provider = provider

        console = os.environ.get("OTEL_CONSOLE_EXPORT", "false").lower() == "true"
        if console:
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        _logger.debug("Telemetry initialized (service=%s, console_export=%s)", svc, console)

        for instrumentor in (AioHttpClientInstrumentor(), LoggingInstrumentor(), SQLite3Instrumentor()):
            try:
                instrumentor.instrument()
            except Exception as e:
                _logger.debug("Telemetry: %s unavailable: %s", type(instrumentor).__name__, e)

        _initialized = True

        # Flush BatchSpanProcessor on exit for short-lived single runs
        atexit.register(_shutdown)


def _shutdown() -> None:
    if _provider:
        try:
            _provider.shutdown()
        except Exception as e:
            _logger.debug("Telemetry shutdown failed: %s", e)


def get_tracer(name: str = "feed-poller"):
    """Get the OpenTelemetry tracer for a named subsystem."""
    return trace.get_tracer(name)


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    static_attrs: dict | None = None,
    attr_from_args: Optional[Callable[..., dict]] = None,
):
    """Decorator to wrap a function call in an OpenTelemetry span.

    Args:
        span_name: Name of the span (defaults to module.funcname)
        tracer_name: Tracer name (defaults to the first dotted part of span_name)
        static_attrs: Dict of attributes to set on the span
        attr_from_args: Callable taking (*args, **kwargs) and returning a dict
                        of attributes to set on the span

    Works with sync and async functions. Exceptions are recorded on the span
    and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or "feed-poller")

        def _set_attrs(span, args, kwargs):
            try:
                for k, v in (static_attrs or {}).items():
                    span.set_attribute(k, v)
                if callable(attr_from_args):
                    for k, v in (attr_from_args(*args, **kwargs) or {}).items():
                        span.set_attribute(k, v)
            except Exception as e:
                _logger.debug("Could not set span attributes for %s: %s", name, e)

        def _record_failure(span, exc):
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_wrapper(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _set_attrs(span, args, kwargs)
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        _record_failure(span, e)
                        raise

            return _async_wrapper

        @functools.wraps(func)
        def _sync_wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _set_attrs(span, args, kwargs)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record_failure(span, e)
                    raise

        return _sync_wrapper

    return _decorator
