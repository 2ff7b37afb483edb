import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import urlparse

from opentelemetry import trace

SERVICE_NAME = "steam-workshop-downloader"

log = logging.getLogger("workshop_sync.telemetry")

_OTEL_READY = False
_OTEL_ENABLED = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    tracer = trace.get_tracer(SERVICE_NAME)
    with tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    _set_span_attribute(span, key, value)
        yield span


def init_telemetry(
    service_name: str = SERVICE_NAME,
    service_version: str = "",
    deployment_environment: str = "",
) -> bool:
    global _OTEL_READY, _OTEL_ENABLED

    if _OTEL_READY:
        return _OTEL_ENABLED

    _OTEL_READY = True
    dsn = os.environ.get("UPTRACE_DSN", "").strip()
    if not dsn:
        log.debug("UPTRACE_DSN is not set, OpenTelemetry export is disabled")
        _OTEL_ENABLED = False
        return False

    service_name = os.environ.get("OTEL_SERVICE_NAME", service_name).strip()
    service_version = os.environ.get("OTEL_SERVICE_VERSION", service_version).strip()
    deployment_environment = os.environ.get(
        "OTEL_DEPLOYMENT_ENVIRONMENT", deployment_environment
    ).strip()

    try:
        import uptrace

        uptrace.configure_opentelemetry(
            dsn=dsn,
            service_name=service_name,
            service_version=service_version,
            deployment_environment=deployment_environment,
        )
        _instrument_http_clients()
        _OTEL_ENABLED = True
        log.info("OpenTelemetry is enabled and exporting to Uptrace")
        return True
    except (ImportError, RuntimeError, ValueError, TypeError, AttributeError):
        log.exception("Failed to initialize OpenTelemetry")
        _OTEL_ENABLED = False
        return False


def shutdown_telemetry() -> None:
    if not _OTEL_ENABLED:
        return

    try:
        import uptrace

        uptrace.shutdown()
    except (ImportError, RuntimeError, ValueError, TypeError, AttributeError):
        log.exception("Failed to shutdown OpenTelemetry cleanly")


def _instrument_http_clients() -> None:
    try:
        from opentelemetry.instrumentation.aiohttp_client import (
            AioHttpClientInstrumentor,
        )

        AioHttpClientInstrumentor().instrument(
            request_hook=_aiohttp_request_hook,
        )
    except (ImportError, RuntimeError, ValueError, TypeError, AttributeError) as exc:
        log.warning("aiohttp instrumentation is unavailable: %s", exc)


def _aiohttp_request_hook(span: Any, params: Any) -> None:
    if span is None:
        return
    is_recording = getattr(span, "is_recording", None)
    if callable(is_recording) and not is_recording():
        return
    method = str(getattr(params, "method", "") or "HTTP").upper()
    parsed = urlparse(str(getattr(params, "url", "") or ""))
    route = parsed.path or "/"
    try:
        span.update_name(f"{method} {parsed.netloc}{route}")
    except (AttributeError, RuntimeError, ValueError, TypeError):
        pass
    _set_span_attribute(span, "http.route", route)


def _set_span_attribute(span: Any, key: str, value: Any) -> None:
    try:
        span.set_attribute(key, value)
    except (AttributeError, RuntimeError, ValueError, TypeError):
        pass
