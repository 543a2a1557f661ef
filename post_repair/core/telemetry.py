from __future__ import annotations

from dataclasses import dataclass
import logging
import sys
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from post_repair.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

REPAIR_MODE = "repair.mode"
REPAIR_POST_INDEX = "repair.post_index"

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None = None
    instrumentor: HTTPXClientInstrumentor | None = None


def configure_logging(level: int = logging.INFO) -> None:
    # Progress lines are part of the job output and go to stdout.
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)


def build_resource(settings: Settings, mode: str) -> Resource:
    return Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            REPAIR_MODE: mode,
            REPAIR_POST_INDEX: settings.post_index,
        }
    )


def setup_telemetry(settings: Settings, *, mode: str) -> TelemetryRuntime:
    """Install a tracer provider tagged with the repair mode of this invocation.

    Search index calls are traced through the httpx instrumentation. With no
    exporter endpoint configured the spans only feed log correlation.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False)

    provider = TracerProvider(
        resource=build_resource(settings, mode),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    else:
        logging.getLogger(__name__).info("no OTLP endpoint set; %s spans stay local", mode)
    trace.set_tracer_provider(provider)

    instrumentor = HTTPXClientInstrumentor()
    instrumentor.instrument()
    return TelemetryRuntime(enabled=True, provider=provider, instrumentor=instrumentor)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.instrumentor is not None:
        runtime.instrumentor.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def annotate_report(span: Any, summary: dict[str, Any]) -> None:
    """Copy a run summary (``RepairReport.summary()``) onto the run span."""
    for name, value in summary.items():
        span.set_attribute(f"repair.{name}", value)


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    base_factory = logging.getLogRecordFactory()

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = base_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _ZERO_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _ZERO_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
