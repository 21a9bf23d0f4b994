"""OpenTelemetry + Prometheus fallback wiring for the Bitácora backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from bitacora import config

logger = logging.getLogger("bitacora.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_capture_counter: Any | None = None
_capture_latency_hist: Any | None = None
_commit_counter: Any | None = None
_classification_failure_counter: Any | None = None
_cache_lookup_counter: Any | None = None

_prom_enabled = False
_prom_capture_counter: Any | None = None
_prom_capture_latency_hist: Any | None = None
_prom_commit_counter: Any | None = None
_prom_classification_failure_counter: Any | None = None
_prom_cache_lookup_counter: Any | None = None


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


def _labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _capture_counter, _capture_latency_hist, _commit_counter
    global _classification_failure_counter, _cache_lookup_counter
    global _prom_enabled
    global _prom_capture_counter, _prom_capture_latency_hist, _prom_commit_counter
    global _prom_classification_failure_counter, _prom_cache_lookup_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (BITACORA_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
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
    service_name = config.OTEL_SERVICE_NAME or "bitacora-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "bitacora",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("bitacora.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("bitacora.backend")

    _capture_counter = meter.create_counter(
        "bitacora_captures_total",
        unit="1",
        description="Captures by terminal pipeline state",
    )
    _capture_latency_hist = meter.create_histogram(
        "bitacora_capture_latency_ms",
        unit="ms",
        description="Latency from capture to staged or committed result",
    )
    _commit_counter = meter.create_counter(
        "bitacora_topic_commits_total",
        unit="1",
        description="Per-topic commit outcomes",
    )
    _classification_failure_counter = meter.create_counter(
        "bitacora_classification_failures_total",
        unit="1",
        description="Classification service failures",
    )
    _cache_lookup_counter = meter.create_counter(
        "bitacora_cache_lookups_total",
        unit="1",
        description="Local cache lookups by result",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_capture_counter = Counter(
                "bitacora_captures_total",
                "Captures by terminal pipeline state",
                ["state", "owner"],
            )
            _prom_capture_latency_hist = Histogram(
                "bitacora_capture_latency_ms",
                "Latency from capture to staged or committed result",
                ["state", "owner"],
            )
            _prom_commit_counter = Counter(
                "bitacora_topic_commits_total",
                "Per-topic commit outcomes",
                ["status", "owner"],
            )
            _prom_classification_failure_counter = Counter(
                "bitacora_classification_failures_total",
                "Classification service failures",
                ["owner"],
            )
            _prom_cache_lookup_counter = Counter(
                "bitacora_cache_lookups_total",
                "Local cache lookups by result",
                ["result"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
        if _meter_provider is not None:
            _meter_provider.shutdown()
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Observability shutdown incomplete: %s", exc)
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


def record_capture(state: str, duration_ms: float, *, owner_id: str) -> None:
    labels = _labels(state=state, owner=owner_id)
    if _enabled and _capture_counter is not None:
        _capture_counter.add(1, labels)
    if _enabled and _capture_latency_hist is not None:
        _capture_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_capture_counter is not None:
        _prom_capture_counter.labels(**labels).inc()
    if _prom_enabled and _prom_capture_latency_hist is not None:
        _prom_capture_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_commit(status: str, *, owner_id: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = _labels(status=status, owner=owner_id)
    if _enabled and _commit_counter is not None:
        _commit_counter.add(safe_count, labels)
    if _prom_enabled and _prom_commit_counter is not None:
        _prom_commit_counter.labels(**labels).inc(safe_count)


def record_classification_failure(*, owner_id: str) -> None:
    labels = _labels(owner=owner_id)
    if _enabled and _classification_failure_counter is not None:
        _classification_failure_counter.add(1, labels)
    if _prom_enabled and _prom_classification_failure_counter is not None:
        _prom_classification_failure_counter.labels(**labels).inc()


def record_cache_lookup(*, hit: bool) -> None:
    labels = {"result": "hit" if hit else "miss"}
    if _enabled and _cache_lookup_counter is not None:
        _cache_lookup_counter.add(1, labels)
    if _prom_enabled and _prom_cache_lookup_counter is not None:
        _prom_cache_lookup_counter.labels(**labels).inc()
