from __future__ import annotations

from dataclasses import dataclass, field
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from jobportal.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

SUPABASE_URL_ATTRIBUTE = "jobportal.supabase.url"
POSTER_BUCKET_ATTRIBUTE = "jobportal.storage.bucket"


class TraceContextFilter(logging.Filter):
    """Stamps the active span's ids onto every record passing a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else "0" * 32
        record.span_id = format(context.span_id, "016x") if context.is_valid else "0" * 16
        return True


def attach_trace_context(handler: logging.Handler) -> None:
    if not any(isinstance(existing, TraceContextFilter) for existing in handler.filters):
        handler.addFilter(TraceContextFilter())


def configure_logging(settings: Settings) -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT if settings.otel_log_correlation else PLAIN_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    if settings.otel_log_correlation:
        for handler in root.handlers:
            attach_trace_context(handler)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    instrumentor: HTTPXClientInstrumentor | None = field(default=None, repr=False)


def build_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            SUPABASE_URL_ATTRIBUTE: settings.supabase_url,
            POSTER_BUCKET_ATTRIBUTE: settings.poster_bucket,
        }
    )


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    provider = TracerProvider(
        resource=build_resource(settings),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    if settings.otel_exporter_otlp_endpoint:
        exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            headers=parse_headers(settings.otel_exporter_otlp_headers) or None,
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
    else:
        logger.info("no OTLP endpoint configured; spans stay in-process project=%s", settings.supabase_url)
    trace.set_tracer_provider(provider)

    # Backend calls all go through httpx, so one instrumentor covers auth, rest and storage.
    instrumentor = HTTPXClientInstrumentor()
    instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider, instrumentor=instrumentor)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.instrumentor is not None:
        runtime.instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def parse_headers(raw: str | None) -> dict[str, str]:
    """Read ``key=value,key=value`` exporter headers, ignoring malformed pairs."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}
