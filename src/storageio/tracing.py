"""OpenTelemetry tracing for storage operations.

Provides the tracing decorator applied to adapter operations and a small
configuration entry point for the tracer provider.

Environment Variables:
    STORAGEIO_OTEL_ENABLED: Set to "1" to emit spans (default: disabled)
    STORAGEIO_OTEL_SERVICE_NAME: Service name for spans (default: "storageio")
    STORAGEIO_OTEL_EXPORTER: "console" or "none" (default: "none"; the host
        application normally owns exporters)
    STORAGEIO_OTEL_TEST_CAPTURE: Set to "1" to use an in-memory exporter

Security:
    - Raw object keys are never exported; only their SHA256 is
    - No filesystem paths, URLs with credentials or bodies in attributes
"""

from __future__ import annotations

import functools
import hashlib
import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar, cast

from opentelemetry import trace

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

TRACER_NAME = "storageio.object_store"

_tracer_provider: TracerProvider | None = None
_test_exporter: Any = None


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no", ""):
        return default
    return default


def is_tracing_enabled() -> bool:
    """Check if span emission is enabled."""
    return _get_env_bool("STORAGEIO_OTEL_ENABLED", False)


def configure_tracing() -> bool:
    """Configure the tracer provider used for storage spans.

    Idempotent. Without configuration, spans go to the globally registered
    OpenTelemetry provider (a no-op unless the host application sets one).

    Returns:
        True if tracing is enabled, False otherwise.
    """
    global _tracer_provider, _test_exporter

    if not is_tracing_enabled():
        logger.debug("Storage tracing disabled (STORAGEIO_OTEL_ENABLED not set)")
        return False

    if _tracer_provider is not None:
        return True

    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

    service_name = os.environ.get("STORAGEIO_OTEL_SERVICE_NAME", "storageio").strip()
    exporter_type = os.environ.get("STORAGEIO_OTEL_EXPORTER", "none").strip().lower()

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

    if _get_env_bool("STORAGEIO_OTEL_TEST_CAPTURE", False):
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
            InMemorySpanExporter,
        )

        _test_exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
    elif exporter_type == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    _tracer_provider = provider
    logger.info("Storage tracing configured: service=%s", service_name)
    return True


def reset_tracing() -> None:
    """Drop the configured provider (tests)."""
    global _tracer_provider, _test_exporter
    if _tracer_provider is not None:
        _tracer_provider.shutdown()
    _tracer_provider = None
    _test_exporter = None


def get_test_spans() -> list[ReadableSpan]:
    """Return spans captured by the in-memory exporter."""
    if _test_exporter is None:
        return []
    return list(_test_exporter.get_finished_spans())


def clear_test_spans() -> None:
    """Clear spans captured by the in-memory exporter."""
    if _test_exporter is not None:
        _test_exporter.clear()


def _get_tracer() -> trace.Tracer:
    if _tracer_provider is not None:
        return _tracer_provider.get_tracer(TRACER_NAME)
    return trace.get_tracer(TRACER_NAME)


def key_digest(key: object) -> str:
    """Return the SHA256 of a key's string form, used for span correlation."""
    return hashlib.sha256(str(key).encode("utf-8")).hexdigest()


def traced_storage_operation(operation: str) -> Callable[[F], F]:
    """Decorator to trace adapter operations with OpenTelemetry.

    The wrapped method must take the object key (or listing prefix) as its
    first positional argument after ``self``.

    Args:
        operation: Operation name (e.g., "read", "write_full", "stat").

    Returns:
        Decorated function that emits spans when tracing is enabled.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, key: Any, *args: Any, **kwargs: Any) -> Any:
            if not is_tracing_enabled():
                return func(self, key, *args, **kwargs)

            span_name = f"storageio.object_store.{operation}"
            with _get_tracer().start_as_current_span(span_name) as span:
                span.set_attribute("storage.backend", getattr(self, "backend_name", "unknown"))
                if key is not None:
                    span.set_attribute("storageio.object_key_sha256", key_digest(key))
                try:
                    result = func(self, key, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("error", True)
                    span.set_attribute("error.type", type(e).__name__)
                    kind = getattr(e, "kind", None)
                    if kind is not None:
                        span.set_attribute("storageio.error_kind", str(kind))
                    raise

                _add_result_attributes(span, result)
                return result

        return cast(F, wrapper)

    return decorator


def _add_result_attributes(span: Any, result: Any) -> None:
    """Add safe result attributes (content hash, size) to a span."""
    metadata = getattr(result, "metadata", result)
    content_hash = getattr(metadata, "content_hash", None)
    if content_hash is None:
        return
    span.set_attribute("storageio.object_content_hash", content_hash)
    span.set_attribute("storageio.object_size_bytes", metadata.size_bytes)
    span.set_attribute("storageio.hash_algorithm", str(metadata.hash_algorithm))
