# telemetry.py — Optional OpenTelemetry tracing for the PMS API
"""
Tracing is switched on by OTEL_EXPORTER_OTLP_ENDPOINT. Without it, or without
the `otel` extra installed, every helper here degrades to a no-op so routers
can wrap report generation in spans unconditionally.
"""
import os
import logging
from contextlib import contextmanager

logger = logging.getLogger("pms.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "pms-api")
SERVICE_VERSION = "1.0.0"
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")
EXCLUDED_URLS = "health,docs,openapi.json"


def _instrument_fastapi(app, provider):
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS, tracer_provider=provider)


def _instrument_sqlalchemy(engine, provider):
    from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)


def setup_telemetry(app=None, engine=None):
    """Export spans over OTLP and instrument the app and the async engine."""
    if not OTLP_ENDPOINT:
        logger.info("Tracing disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("OTEL_EXPORTER_OTLP_ENDPOINT set but the otel extra is not installed")
        return None

    provider = TracerProvider(resource=Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": os.getenv("ENVIRONMENT", "development"),
    }))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=OTLP_ENDPOINT, insecure=True)))
    trace.set_tracer_provider(provider)

    targets = []
    if app is not None:
        targets.append(("FastAPI", _instrument_fastapi, app))
    if engine is not None:
        targets.append(("SQLAlchemy", _instrument_sqlalchemy, engine))
    for name, instrument, target in targets:
        try:
            instrument(target, provider)
            logger.info(f"{name} instrumented")
        except ImportError:
            logger.warning(f"{name} instrumentation package not installed")
        except Exception as e:
            logger.error(f"{name} instrumentation failed: {e}")

    logger.info(f"Tracing {SERVICE_NAME} to {OTLP_ENDPOINT}")
    return provider


@contextmanager
def traced(span_name: str, **attributes):
    """Run a block inside a span; attributes with None values are dropped."""
    try:
        from opentelemetry import trace
    except ImportError:
        yield None
        return
    with trace.get_tracer("pms", SERVICE_VERSION).start_as_current_span(span_name) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"pms.{key}", value)
        yield span
