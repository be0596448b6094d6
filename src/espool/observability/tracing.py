"""
Statement tracing hooks for espool.

Every statement the executor issues is bracketed by a tracer: before the
statement ``tracer.trace_data(descriptor)`` is called, and the callable it
returns is invoked exactly once after the statement returns, whether it
succeeded or failed. The descriptor is the SQL text, or ``"batch"`` for
batched statements.

Two tracers ship with the package:

- ``NilTracer``: the default, does nothing.
- ``OtelTracer``: opens an OpenTelemetry CLIENT span per statement.

Usage:
    from espool.observability.tracing import OtelTracer, init_tracing

    init_tracing(service_name="shop", exporter="otlp")
    executor = EsPool(pool).with_tracer(OtelTracer("shop"))
"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from opentelemetry import trace as otel_trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import SpanKind
from opentelemetry.trace import Tracer as OtelTracerType

from espool.config.environment import Environment
from espool.config.logging_config import get_logger

log = get_logger(__name__)

BATCH_DESCRIPTOR = "batch"


def _truncate_text(text: str, max_length: int = 200) -> str:
    """Truncate text to a maximum length for span names and attributes."""
    return text[:max_length] if len(text) > max_length else text


def _noop() -> None:
    pass


class Tracer(Protocol):
    """Statement tracing hook used by the executor."""

    def trace_data(self, request: str) -> Callable[[], None]:
        """Start tracing ``request`` and return the callable that finishes it."""
        ...


class NilTracer:
    """Tracer that records nothing."""

    def trace_data(self, request: str) -> Callable[[], None]:
        return _noop


class OtelTracer:
    """Tracer that opens one OpenTelemetry span per statement.

    The span is a CLIENT span named after the (truncated) statement and
    carries the ``db.system`` and ``db.statement`` semantic attributes. Each
    call returns its own closure over its own span, so concurrent statements
    share no mutable state.

    Failures of the OpenTelemetry backend are logged and never reach the
    statement being traced.
    """

    def __init__(self, service_name: str = "espool", tracer: Optional[OtelTracerType] = None):
        self.service_name = service_name
        self._tracer = tracer

    @property
    def tracer(self) -> OtelTracerType:
        if self._tracer is None:
            # Resolved lazily so init_tracing() may run after construction
            self._tracer = otel_trace.get_tracer("espool", get_tracing_config().service_version)
        return self._tracer

    def trace_data(self, request: str) -> Callable[[], None]:
        statement = _truncate_text(request)
        try:
            span = self.tracer.start_span(
                name=statement,
                kind=SpanKind.CLIENT,
                attributes={
                    "db.system": "postgresql",
                    "db.statement": statement,
                    "service.name": self.service_name,
                },
            )
        except Exception as e:
            log.debug(f"Failed to start OTEL span: {e}")
            return _noop

        def finish() -> None:
            try:
                span.end()
            except Exception as e:
                log.debug(f"Failed to end OTEL span: {e}")

        return finish


# ---------------------------------------------------------------------------
# Global provider setup
# ---------------------------------------------------------------------------


@dataclass
class TracingConfig:
    """Configuration for the tracing system.

    Attributes:
        enabled: Whether tracing is enabled globally
        exporter: Exporter type (otlp, console, none)
        endpoint: OTLP endpoint URL
        service_name: Service name for trace attribution
        service_version: Service version
    """

    enabled: bool = False
    exporter: str = "none"
    endpoint: Optional[str] = None
    service_name: str = "espool"
    service_version: str = "0.1.0"

    @classmethod
    def from_environment(cls) -> "TracingConfig":
        return cls(
            enabled=Environment.is_tracing_enabled(),
            exporter=Environment.get_tracing_exporter(),
            endpoint=Environment.get_otlp_endpoint(),
            service_name=Environment.get_service_name(),
        )


# Seeded from the environment on first use
_tracing_config: Optional[TracingConfig] = None
_tracing_initialized = False
_otel_provider: Optional[TracerProvider] = None


def configure_tracing(config: TracingConfig) -> None:
    """Configure the tracing system with the given config."""
    global _tracing_config
    _tracing_config = config
    log.info(f"Tracing configured: enabled={config.enabled}, exporter={config.exporter}")


def get_tracing_config() -> TracingConfig:
    """Get the current tracing configuration, read from the environment unless configured."""
    global _tracing_config
    if _tracing_config is None:
        _tracing_config = TracingConfig.from_environment()
    return _tracing_config


def _setup_otel_provider(
    service_name: str,
    service_version: str,
    exporter_type: str,
    endpoint: Optional[str] = None,
) -> Optional[TracerProvider]:
    """Set up an OpenTelemetry TracerProvider with the specified exporter.

    Args:
        service_name: Name of the service
        service_version: Version of the service
        exporter_type: Type of exporter (console, otlp, none)
        endpoint: OTLP endpoint if using the otlp exporter

    Returns:
        The registered TracerProvider, or None when nothing is exported
    """
    if exporter_type == "none":
        log.info("OTEL exporter disabled (none)")
        return None
    if exporter_type not in ("console", "otlp"):
        log.warning(f"Unknown exporter type '{exporter_type}'; no spans will be exported")
        return None

    resource = Resource.create({SERVICE_NAME: service_name, SERVICE_VERSION: service_version})
    provider = TracerProvider(resource=resource)

    if exporter_type == "console":
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        log.info("OTEL console exporter configured")
    else:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            log.warning("opentelemetry-exporter-otlp not installed; falling back to console exporter")
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        else:
            otlp_endpoint = endpoint or "http://localhost:4317"
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            log.info(f"OTEL OTLP exporter configured with endpoint: {otlp_endpoint}")

    otel_trace.set_tracer_provider(provider)
    log.info("OTEL TracerProvider registered globally")
    return provider


def init_tracing(
    service_name: Optional[str] = None,
    exporter: Optional[str] = None,
    endpoint: Optional[str] = None,
) -> Optional[TracerProvider]:
    """
    Initialize the global OpenTelemetry tracer provider.

    Explicit arguments win over the configured ``TracingConfig``. Calling this
    more than once only logs a warning.

    Returns:
        The registered provider, or None when tracing exports nothing
    """
    global _tracing_initialized, _otel_provider

    if _tracing_initialized:
        log.warning("Tracing already initialized")
        return _otel_provider

    config = get_tracing_config()
    resolved_exporter = exporter or config.exporter
    resolved_endpoint = endpoint or config.endpoint
    resolved_service = service_name or config.service_name

    _tracing_initialized = True
    _otel_provider = _setup_otel_provider(
        service_name=resolved_service,
        service_version=config.service_version,
        exporter_type=resolved_exporter,
        endpoint=resolved_endpoint,
    )
    log.info(f"Tracing initialized for service: {resolved_service}")
    return _otel_provider


def is_tracing_enabled() -> bool:
    """Check if tracing is globally initialized."""
    return _tracing_initialized


def get_tracer(service_name: Optional[str] = None) -> Tracer:
    """
    Return the statement tracer matching the current configuration.

    ``OtelTracer`` when tracing is enabled, ``NilTracer`` otherwise.
    """
    config = get_tracing_config()
    if not config.enabled:
        return NilTracer()
    return OtelTracer(service_name or config.service_name)
