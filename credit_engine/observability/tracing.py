"""
Distributed Tracing with OpenTelemetry.

Billing decisions and reconciliations run inside spans so a single request
can be followed from the HTTP layer down to the ledger queries.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from credit_engine.config import settings

TRACER_NAME = "credit_engine.billing"
ATTRIBUTE_PREFIX = "billing."

# Probes and scrapes would otherwise dominate the trace volume
EXCLUDED_URLS = "health,metrics"


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider (no-op when tracing is disabled)."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "credit_engine.storage_backend": settings.storage_backend,
            }
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every request except health checks and metric scrapes."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace ledger and usage queries issued through an async engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def billing_attributes(**attributes: Any) -> dict[str, str | int | float | bool]:
    """
    Namespace attributes under ``billing.`` and coerce them to OTel types.

    None values are dropped; enums and other objects become strings.
    """
    coerced: dict[str, str | int | float | bool] = {}
    for key, value in attributes.items():
        if value is None:
            continue
        name = key if key.startswith(ATTRIBUTE_PREFIX) else ATTRIBUTE_PREFIX + key
        coerced[name] = value if isinstance(value, (str, int, float, bool)) else str(value)
    return coerced


@contextmanager
def trace_operation(operation_name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a current span.

    Usage:
        with trace_operation("billing.evaluate", usage_id=usage_id) as span:
            span.set_attribute("billing.route", "platform_credits")

    An escaping exception marks the span as errored and is re-raised.
    """
    tracer = trace.get_tracer(TRACER_NAME)
    with tracer.start_as_current_span(
        operation_name,
        attributes=billing_attributes(**attributes),
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, type(exc).__name__))
            span.record_exception(exc)
            raise
