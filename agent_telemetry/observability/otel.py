"""Optional OpenTelemetry wiring for the telemetry pipeline."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from agent_telemetry import config

logger = logging.getLogger("agent_telemetry.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None

_records_counter: Any | None = None
_processing_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_sync_counter: Any | None = None
_tokens_counter: Any | None = None
_data_quality_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def is_enabled() -> bool:
    return _enabled


def initialize() -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider
    global _records_counter, _processing_latency_hist, _parser_failure_counter
    global _sync_counter, _tokens_counter, _data_quality_counter

    if _initialized:
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.debug("OpenTelemetry disabled (AGENT_TELEMETRY_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "agent-telemetry"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "agent-telemetry",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("agent_telemetry")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("agent_telemetry")

    _records_counter = meter.create_counter(
        "agent_telemetry_records_extracted_total",
        unit="1",
        description="Records appended by each extraction processor",
    )
    _processing_latency_hist = meter.create_histogram(
        "agent_telemetry_processing_latency_ms",
        unit="ms",
        description="Latency for session processing and sync runs",
    )
    _parser_failure_counter = meter.create_counter(
        "agent_telemetry_parser_failures_total",
        unit="1",
        description="Count of transcript parse failures",
    )
    _sync_counter = meter.create_counter(
        "agent_telemetry_sync_records_total",
        unit="1",
        description="Records delivered or retried by the sync engine",
    )
    _tokens_counter = meter.create_counter(
        "agent_telemetry_tokens_total",
        unit="1",
        description="Token totals by model and direction",
    )
    _data_quality_counter = meter.create_counter(
        "agent_telemetry_data_quality_total",
        unit="1",
        description="Transcript anomalies such as messages without token usage",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _enabled = True

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown() -> None:
    global _enabled
    if not _initialized:
        return
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("OpenTelemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_processing(stage: str, result: str, duration_ms: float, *, agent: str) -> None:
    labels = {
        "stage": stage or "unknown",
        "result": result or "unknown",
        "agent": agent or "unknown",
    }
    if _enabled and _processing_latency_hist is not None:
        _processing_latency_hist.record(max(0.0, float(duration_ms)), labels)


def record_records_extracted(processor: str, count: int, *, agent: str) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _records_counter is not None:
        _records_counter.add(safe_count, {"processor": processor or "unknown", "agent": agent or "unknown"})


def record_parser_failure(parser: str, *, reason: str = "") -> None:
    labels = {
        "parser": parser or "unknown",
        "reason": reason or "unknown",
    }
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)


def record_sync_result(kind: str, result: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _sync_counter is not None:
        _sync_counter.add(safe_count, {"kind": kind or "unknown", "result": result or "unknown"})


def record_tokens(*, model: str, token_input: int, token_output: int, agent: str) -> None:
    labels_base = {
        "model": (model or "unknown").strip() or "unknown",
        "agent": agent or "unknown",
    }
    in_tokens = max(0, int(token_input))
    out_tokens = max(0, int(token_output))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {**labels_base, "direction": "input"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {**labels_base, "direction": "output"})


def record_data_quality(issue: str, count: int = 1, *, agent: str) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _data_quality_counter is not None:
        _data_quality_counter.add(safe_count, {"issue": issue or "unknown", "agent": agent or "unknown"})
