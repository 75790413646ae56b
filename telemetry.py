#!/usr/bin/env python3
"""
Telemetry setup using OpenTelemetry.

Spans wrap the expensive steps of a run (feed fetches, downloads, history
persistence) and aiohttp client requests are instrumented automatically.
Nothing is exported unless asked for, so that a cron run stays silent.

Environment variables:
  - OTEL_SERVICE_NAME (default: videofeeds)
  - OTEL_ENVIRONMENT (maps to deployment.environment)
  - OTEL_CONSOLE_EXPORT=true to print finished spans to stderr
  - DISABLE_TELEMETRY=true to fully disable

init_telemetry() only runs once per process.
"""

from __future__ import annotations

import os
import sys
import atexit
import logging
import threading
from typing import Any, Callable, Dict, Optional
import asyncio
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor

DEFAULT_SERVICE_NAME = "videofeeds"

_setup_lock = threading.Lock()
_provider: Optional[TracerProvider] = None

_logger = logging.getLogger("VideoFeeds.telemetry")

AttrFactory = Callable[..., Optional[Dict[str, Any]]]


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() == "true"


def _resource(service_name: str) -> Resource:
    attributes = {"service.name": service_name}
    environment = os.environ.get("OTEL_ENVIRONMENT")
    if environment:
        attributes["deployment.environment"] = environment
    return Resource.create(attributes)


def _install_provider(service_name: str) -> TracerProvider:
    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        # Someone (opentelemetry-instrument, a test harness) got here first
        return current
    provider = TracerProvider(resource=_resource(service_name))
    trace.set_tracer_provider(provider)
    return provider


def _instrument_libraries() -> None:
    for label, instrument in (
        ("aiohttp", lambda: AioHttpClientInstrumentor().instrument()),
        # Adds otelTraceID / otelSpanID to log records; the log format is ours
        ("logging", lambda: LoggingInstrumentor().instrument(set_logging_format=False)),
    ):
        try:
            instrument()
        except Exception as e:
            _logger.debug("%s instrumentation unavailable: %s", label, e)


def init_telemetry(service_name: Optional[str] = None) -> None:
    """Install a tracer provider and instrument aiohttp and logging.

    Does nothing when DISABLE_TELEMETRY=true or when already initialized.
    """
    global _provider
    if _env_flag("DISABLE_TELEMETRY") or _provider is not None:
        return
    with _setup_lock:
        if _provider is not None:
            return

        name = service_name or os.environ.get("OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME)
        provider = _install_provider(name)
        if _env_flag("OTEL_CONSOLE_EXPORT"):
            # stdout belongs to the downloader
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr)))
            _logger.info("Tracing %s to stderr", name)
        else:
            _logger.debug("Tracing %s without an exporter", name)

        _instrument_libraries()
        atexit.register(shutdown_telemetry)
        _provider = provider


def shutdown_telemetry() -> None:
    """Flush pending spans; called at interpreter exit."""
    if _provider is None:
        return
    try:
        _provider.shutdown()
    except Exception as e:
        _logger.debug("Telemetry shutdown failed: %s", e)


def get_tracer(name: str = DEFAULT_SERVICE_NAME):
    return trace.get_tracer(name)


def _apply(span, span_name: str, factory: Optional[AttrFactory], *args, **kwargs) -> None:
    if span is None or factory is None:
        return
    try:
        for key, value in (factory(*args, **kwargs) or {}).items():
            if value is not None:
                span.set_attribute(key, value)
    except (TypeError, ValueError, AttributeError, IndexError, KeyError) as e:
        # A bad attribute factory must never break the traced call
        _logger.debug("Could not set span attributes for %s: %s", span_name, e)


def _record_failure(span, error: BaseException) -> None:
    if span is None:
        return
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, type(error).__name__))


def trace_span(
    span_name: str | None = None,
    *,
    tracer_name: str | None = None,
    attr_from_args: Optional[AttrFactory] = None,
    attr_from_result: Optional[AttrFactory] = None,
):
    """Run the decorated function (sync or async) inside a span.

    Args:
        span_name: Span name, "module.function" by default
        tracer_name: Tracer name, the first dotted part of span_name by default
        attr_from_args: Called with the call's arguments; returns span attributes
        attr_from_result: Called with the return value; returns span attributes

    Exceptions are recorded on the span and re-raised unchanged.
    """

    def _decorator(func):
        name = span_name or f"{func.__module__}.{func.__name__}"
        tracer = get_tracer(tracer_name or name.split(".")[0] or DEFAULT_SERVICE_NAME)

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _async_traced(*args, **kwargs):
                with tracer.start_as_current_span(name) as span:
                    _apply(span, name, attr_from_args, *args, **kwargs)
                    try:
                        result = await func(*args, **kwargs)
                    except Exception as e:
                        _record_failure(span, e)
                        raise
                    _apply(span, name, attr_from_result, result)
                    return result

            return _async_traced

        @functools.wraps(func)
        def _traced(*args, **kwargs):
            with tracer.start_as_current_span(name) as span:
                _apply(span, name, attr_from_args, *args, **kwargs)
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    _record_failure(span, e)
                    raise
                _apply(span, name, attr_from_result, result)
                return result

        return _traced

    return _decorator
