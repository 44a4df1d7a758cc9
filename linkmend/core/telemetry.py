from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from linkmend.core.config import Settings

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s session=%(session_id)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
)
# Client libraries that log once per request.
NOISY_LOGGERS = ("httpx", "httpcore", "asyncpg")

_session_id: ContextVar[str] = ContextVar("linkmend_session_id", default="-")
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    httpx_instrumented: bool = False


def bind_session(session_id: str) -> Token[str]:
    """Tag log records emitted from the current task (and tasks it spawns) with ``session_id``."""
    return _session_id.set(session_id)


def unbind_session(token: Token[str]) -> None:
    _session_id.reset(token)


def configure_logging(level: int = logging.INFO) -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(
        resource=resource,
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    runtime = TelemetryRuntime(enabled=True, provider=provider)
    if not _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.instrument(tracer_provider=provider)
        runtime.httpx_instrumented = True
    return runtime


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if runtime.httpx_instrumented:
        _httpx_instrumentor.uninstrument()
        runtime.httpx_instrumented = False
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()
        runtime.provider = None


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info("no OTLP endpoint configured, spans stay in process service=%s", settings.otel_service_name)
        return None
    headers = _parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` the way OTEL_EXPORTER_OTLP_HEADERS is written."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def _correlate(record: logging.LogRecord) -> logging.LogRecord:
    context = trace.get_current_span().get_span_context()
    record.session_id = _session_id.get()
    record.trace_id = format(context.trace_id, "032x") if context.is_valid else "-"
    record.span_id = format(context.span_id, "016x") if context.is_valid else "-"
    return record


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        return _correlate(_base_record_factory(*args, **kwargs))

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
