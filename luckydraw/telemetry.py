import os
import logging
from contextlib import contextmanager
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION, DEPLOYMENT_ENVIRONMENT
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)

ATTRIBUTE_PREFIX = "draw."


def setup_telemetry(service_name: str, role: Optional[str] = None, controller_id: Optional[str] = None,
                    service_version: str = "1.0.0"):
    """
    Initialize OpenTelemetry tracing for a draw service.

    Controllers pass their role and id so both consoles can be told apart in
    the trace backend.

    Environment variables:
        OTEL_EXPORTER_OTLP_ENDPOINT: Collector endpoint (default: http://otel-collector:4317)
        OTEL_SERVICE_NAME: Override service name
        DEPLOYMENT_ENV: Environment name (default: production)
        OTEL_ENABLED: Set to "false" to disable (default: true)
    """
    if os.getenv("OTEL_ENABLED", "true").lower() == "false":
        logger.info(f"Tracing disabled for {service_name}")
        return None

    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel-collector:4317")
    attributes = {
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME", service_name),
        SERVICE_VERSION: service_version,
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "production"),
        "service.namespace": "lucky-draw",
    }
    if role:
        attributes[ATTRIBUTE_PREFIX + "role"] = role
    if controller_id:
        attributes[ATTRIBUTE_PREFIX + "controller_id"] = controller_id

    provider = TracerProvider(resource=Resource.create(attributes))

    try:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(provider)

        # Channel, lease and event traffic goes through these clients.
        HTTPXClientInstrumentor().instrument()
        RedisInstrumentor().instrument()
    except Exception as e:
        logger.warning(f"Tracing setup failed for {service_name}: {e}")
        return None

    logger.info(f"Tracing {service_name} to {endpoint}", extra={"role": role, "controller_id": controller_id})
    return provider


def instrument_fastapi(app):
    try:
        FastAPIInstrumentor.instrument_app(app)
    except Exception as e:
        logger.warning(f"Failed to instrument {app.title}: {e}")


def get_tracer(name: str):
    return trace.get_tracer(name)


@contextmanager
def draw_span(tracer, name: str, **attributes):
    """Span with ``draw.*`` attributes; None values are left off.

    An exception escaping the block marks the span as failed and is re-raised.
    """
    with tracer.start_as_current_span(name, record_exception=True, set_status_on_exception=False) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(ATTRIBUTE_PREFIX + key, value)
        try:
            yield span
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            raise
