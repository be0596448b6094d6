"""
Observability module for espool.

Statement tracing hooks and OpenTelemetry provider setup. See
``espool.observability.tracing``.

Example:
    from espool.observability import OtelTracer, init_tracing

    init_tracing(service_name="shop", exporter="console")
    executor = EsPool(pool).with_tracer(OtelTracer("shop"))
"""

from .tracing import (
    BATCH_DESCRIPTOR,
    NilTracer,
    OtelTracer,
    Tracer,
    TracingConfig,
    configure_tracing,
    get_tracer,
    get_tracing_config,
    init_tracing,
    is_tracing_enabled,
)

__all__ = [
    "BATCH_DESCRIPTOR",
    "NilTracer",
    "OtelTracer",
    "Tracer",
    "TracingConfig",
    "configure_tracing",
    "get_tracer",
    "get_tracing_config",
    "init_tracing",
    "is_tracing_enabled",
]
