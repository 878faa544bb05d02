"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging
from typing import Any, Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CollectorRegistry
import structlog

from .config import settings

SERVICE_NAME = "courtbook"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Engine metrics
BOOKINGS_SYNCHRONIZED = Counter(
    'courtbook_bookings_synchronized_total',
    'Booking changes applied by the synchronizer',
    ['action'],
    registry=REGISTRY
)

WAITLIST_TRANSITIONS = Counter(
    'courtbook_waitlist_transitions_total',
    'Waitlist entry status transitions',
    ['status'],
    registry=REGISTRY
)

TRANSACTIONS_EXPIRED = Counter(
    'courtbook_transactions_expired_total',
    'Pending transactions cancelled by the expiration sweep',
    registry=REGISTRY
)

AUDIT_FINDINGS = Counter(
    'courtbook_audit_findings_total',
    'Reconciliation findings',
    ['check', 'outcome'],
    registry=REGISTRY
)

NOTIFICATION_FAILURES = Counter(
    'courtbook_notification_failures_total',
    'Notifications that could not be delivered',
    ['kind'],
    registry=REGISTRY
)

SWEEP_DURATION = Histogram(
    'courtbook_sweep_duration_seconds',
    'Duration of scheduled sweeps in seconds',
    ['sweep'],
    registry=REGISTRY
)

WORKERS_RUNNING = Gauge(
    'courtbook_workers_running',
    'Number of background workers currently running',
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing():
    """Setup OpenTelemetry tracing."""
    trace.set_tracer_provider(TracerProvider(resource=_resource()))

    # Export only when a collector is configured
    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint)
        span_processor = BatchSpanProcessor(otlp_exporter)
        trace.get_tracer_provider().add_span_processor(span_processor)

    return trace.get_tracer(SERVICE_NAME)


def setup_metrics():
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        otlp_exporter = OTLPMetricExporter(endpoint=settings.otlp_endpoint)
        reader = PeriodicExportingMetricReader(exporter=otlp_exporter, export_interval_millis=60000)
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))

    return metrics.get_meter(SERVICE_NAME)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy():
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for engine metrics."""

    @staticmethod
    def record_booking_sync(action: str, count: int = 1):
        """Record bookings updated, created or cancelled by the synchronizer."""
        if count:
            BOOKINGS_SYNCHRONIZED.labels(action=action).inc(count)

    @staticmethod
    def record_waitlist_transition(status: str):
        """Record a waitlist entry reaching ``status``."""
        WAITLIST_TRANSITIONS.labels(status=status).inc()

    @staticmethod
    def record_transaction_expired():
        """Record a pending transaction cancelled by the sweep."""
        TRANSACTIONS_EXPIRED.inc()

    @staticmethod
    def record_audit_finding(check: str, outcome: str):
        """Record a reconciliation finding and how it was resolved."""
        AUDIT_FINDINGS.labels(check=check, outcome=outcome).inc()

    @staticmethod
    def record_notification_failure(kind: str):
        """Record a failed notification delivery."""
        NOTIFICATION_FAILURES.labels(kind=kind).inc()

    @staticmethod
    def observe_sweep(sweep: str, seconds: float):
        """Record how long a scheduled sweep took."""
        SWEEP_DURATION.labels(sweep=sweep).observe(seconds)

    @staticmethod
    def set_workers_running(count: int):
        """Set the number of running background workers."""
        WORKERS_RUNNING.set(count)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()


class StructuredLogger:
    """Structured logger with business context."""

    def __init__(self, name: str, logger: Optional[Any] = None):
        self.name = name
        self.logger = logger if logger is not None else structlog.get_logger(name)

    def info(self, message: str, **kwargs):
        """Log info message with context."""
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with context."""
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with context."""
        self.logger.error(message, **kwargs)

    def debug(self, message: str, **kwargs):
        """Log debug message with context."""
        self.logger.debug(message, **kwargs)

    def with_context(self, **kwargs):
        """Add context to logger."""
        return StructuredLogger(self.name, self.logger.bind(**kwargs))


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
