from contextlib import contextmanager
import logging

from codraw.core.request_context import get_board_id
from codraw.core.settings import settings

logger = logging.getLogger(__name__)

_enabled = False


def setup_telemetry(app=None, service_name: str = "codraw") -> bool:
    """Install an OTLP tracer provider when an endpoint is configured; returns whether tracing is on."""
    global _enabled
    endpoint = settings.otel_endpoint
    if not endpoint:
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("telemetry_disabled", extra={"reason": str(exc)})
        return False

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _enabled = True

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

            FastAPIInstrumentor().instrument_app(app)
        except ImportError:
            logger.info("fastapi_instrumentation_unavailable")
    return True


@contextmanager
def trace_span(name: str, **attributes):
    """Span around an engine step; a no-op until ``setup_telemetry`` succeeded."""
    if not _enabled:
        yield None
        return

    from opentelemetry import trace

    tracer = trace.get_tracer("codraw")
    with tracer.start_as_current_span(name) as span:
        board_id = get_board_id()
        if board_id:
            span.set_attribute("codraw.board_id", board_id)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span
