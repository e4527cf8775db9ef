"""
Distributed Tracing with OpenTelemetry.

Spans cover the payment notification and the payout webhook, the two places
where one request fans out into ledger, entitlement and payout writes.
Operation attributes are namespaced under ``bitindie.`` so they never clash
with the FastAPI and SQLAlchemy instrumentation.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode

from bitindie.config import settings
from bitindie.exceptions import MarketplaceError

ATTRIBUTE_PREFIX = "bitindie"
TRACER_NAME = "bitindie.purchases"


def setup_tracing() -> None:
    """Install an OTLP-exporting tracer provider for the marketplace API."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.namespace": ATTRIBUTE_PREFIX,
            "service.version": settings.api_version,
        }
    )

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every HTTP request. Call once after the app is built."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace queries on an async engine (write and read engines alike)."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def span_attribute_value(value: Any) -> str | int | float | bool:
    """Coerce ids, statuses and timestamps into OpenTelemetry attribute values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    # UUIDs and anything else travel as text
    return str(value)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Set ``bitindie.<name>`` attributes, skipping values that are None."""
    for key, value in attributes.items():
        if value is None:
            continue
        span.set_attribute(f"{ATTRIBUTE_PREFIX}.{key}", span_attribute_value(value))


def set_span_error(span: Span, error: BaseException) -> None:
    """
    Mark a span failed.

    Marketplace errors (missing payout profile, claimed receipt, bad status)
    carry only their class name; other exceptions are recorded in full.
    """
    span.set_attribute("error.type", type(error).__name__)
    span.set_status(Status(StatusCode.ERROR, str(error)))
    if not isinstance(error, MarketplaceError):
        span.record_exception(error)


class trace_operation:
    """
    Context manager for a traced marketplace operation.

    A no-op tracer is used when tracing is disabled, so callers never branch.

    Usage:
        with trace_operation("mark_paid_and_ensure_artifacts", invoice_id=invoice_id) as span:
            result = ...
            add_span_attributes(span, already=result.already)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = f"{ATTRIBUTE_PREFIX}.{operation_name}"
        self.attributes = attributes
        self.span: Span | None = None
        self._scope: Any = None

    def __enter__(self) -> Span:
        self.span = trace.get_tracer(TRACER_NAME).start_span(self.operation_name)
        add_span_attributes(self.span, **self.attributes)
        self._scope = trace.use_span(self.span, end_on_exit=False)
        self._scope.__enter__()
        return self.span

    def __exit__(self, exc_type: type, exc_val: BaseException, exc_tb: object) -> None:
        if self._scope is not None:
            self._scope.__exit__(None, None, None)
        if self.span is None:
            return
        if exc_val is not None:
            set_span_error(self.span, exc_val)
        self.span.end()
