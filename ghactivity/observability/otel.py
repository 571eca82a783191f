"""OpenTelemetry + Prometheus fallback wiring for the activity backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from ghactivity import config

logger = logging.getLogger("ghactivity.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_query_counter: Any | None = None
_query_latency_hist: Any | None = None
_automation_counter: Any | None = None
_automation_events_counter: Any | None = None
_cache_refresh_counter: Any | None = None
_cache_refresh_latency_hist: Any | None = None
_classifier_counter: Any | None = None

_prom_enabled = False
_prom_query_counter: Any | None = None
_prom_query_latency_hist: Any | None = None
_prom_automation_counter: Any | None = None
_prom_automation_events_counter: Any | None = None
_prom_cache_refresh_counter: Any | None = None
_prom_cache_refresh_latency_hist: Any | None = None
_prom_classifier_counter: Any | None = None


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


def _prom_labels(**values: str) -> dict[str, str]:
    return {key: (value or "").strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _query_counter, _query_latency_hist, _automation_counter, _automation_events_counter
    global _cache_refresh_counter, _cache_refresh_latency_hist, _classifier_counter
    global _prom_enabled
    global _prom_query_counter, _prom_query_latency_hist, _prom_automation_counter
    global _prom_automation_events_counter, _prom_cache_refresh_counter
    global _prom_cache_refresh_latency_hist, _prom_classifier_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (GHACTIVITY_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "ghactivity-backend"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "ghactivity",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("ghactivity.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("ghactivity.backend")

    _query_counter = meter.create_counter(
        "ghactivity_activity_queries_total",
        unit="1",
        description="Activity feed list queries",
    )
    _query_latency_hist = meter.create_histogram(
        "ghactivity_activity_query_latency_ms",
        unit="ms",
        description="Latency of activity feed list queries",
    )
    _automation_counter = meter.create_counter(
        "ghactivity_status_automation_runs_total",
        unit="1",
        description="Issue status automation runs by outcome",
    )
    _automation_events_counter = meter.create_counter(
        "ghactivity_status_automation_events_total",
        unit="1",
        description="Issue status events inserted by automation",
    )
    _cache_refresh_counter = meter.create_counter(
        "ghactivity_cache_refresh_total",
        unit="1",
        description="Derived cache refreshes by cache and outcome",
    )
    _cache_refresh_latency_hist = meter.create_histogram(
        "ghactivity_cache_refresh_latency_ms",
        unit="ms",
        description="Latency of derived cache refreshes",
    )
    _classifier_counter = meter.create_counter(
        "ghactivity_mention_classifications_total",
        unit="1",
        description="Mention classifier verdicts by outcome",
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
            _prom_query_counter = Counter(
                "ghactivity_activity_queries_total",
                "Activity feed list queries",
                ["result", "cache"],
            )
            _prom_query_latency_hist = Histogram(
                "ghactivity_activity_query_latency_ms",
                "Latency of activity feed list queries",
                ["result"],
            )
            _prom_automation_counter = Counter(
                "ghactivity_status_automation_runs_total",
                "Issue status automation runs by outcome",
                ["status"],
            )
            _prom_automation_events_counter = Counter(
                "ghactivity_status_automation_events_total",
                "Issue status events inserted by automation",
                ["status"],
            )
            _prom_cache_refresh_counter = Counter(
                "ghactivity_cache_refresh_total",
                "Derived cache refreshes by cache and outcome",
                ["cache", "result"],
            )
            _prom_cache_refresh_latency_hist = Histogram(
                "ghactivity_cache_refresh_latency_ms",
                "Latency of derived cache refreshes",
                ["cache"],
            )
            _prom_classifier_counter = Counter(
                "ghactivity_mention_classifications_total",
                "Mention classifier verdicts by outcome",
                ["status"],
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
    for label, action in (
        ("instrumentor", lambda: _fastapi_instrumentor.uninstrument_app(app) if app and _fastapi_instrumentor else None),
        ("meter provider", lambda: _meter_provider.shutdown() if _meter_provider is not None else None),
        ("trace provider", lambda: _trace_provider.shutdown() if _trace_provider is not None else None),
    ):
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Observability %s shutdown failed: %s", label, exc)
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


def record_activity_query(result: str, duration_ms: float, *, cache_hit: bool) -> None:
    labels = {"result": result or "unknown", "cache": "hit" if cache_hit else "miss"}
    if _enabled and _query_counter is not None:
        _query_counter.add(1, labels)
    if _enabled and _query_latency_hist is not None:
        _query_latency_hist.record(max(0.0, float(duration_ms)), {"result": labels["result"]})
    if _prom_enabled and _prom_query_counter is not None:
        _prom_query_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_query_latency_hist is not None:
        _prom_query_latency_hist.labels(**_prom_labels(result=result)).observe(max(0.0, float(duration_ms)))


def record_automation_run(status: str, inserted_in_progress: int = 0, inserted_done: int = 0) -> None:
    if _enabled and _automation_counter is not None:
        _automation_counter.add(1, {"status": status or "unknown"})
    if _prom_enabled and _prom_automation_counter is not None:
        _prom_automation_counter.labels(**_prom_labels(status=status)).inc()
    for event_status, count in (("in_progress", inserted_in_progress), ("done", inserted_done)):
        safe_count = max(0, int(count or 0))
        if safe_count == 0:
            continue
        if _enabled and _automation_events_counter is not None:
            _automation_events_counter.add(safe_count, {"status": event_status})
        if _prom_enabled and _prom_automation_events_counter is not None:
            _prom_automation_events_counter.labels(status=event_status).inc(safe_count)


def record_cache_refresh(cache_key: str, result: str, duration_ms: float) -> None:
    labels = {"cache": cache_key or "unknown", "result": result or "unknown"}
    if _enabled and _cache_refresh_counter is not None:
        _cache_refresh_counter.add(1, labels)
    if _enabled and _cache_refresh_latency_hist is not None:
        _cache_refresh_latency_hist.record(max(0.0, float(duration_ms)), {"cache": labels["cache"]})
    if _prom_enabled and _prom_cache_refresh_counter is not None:
        _prom_cache_refresh_counter.labels(**_prom_labels(**labels)).inc()
    if _prom_enabled and _prom_cache_refresh_latency_hist is not None:
        _prom_cache_refresh_latency_hist.labels(**_prom_labels(cache=cache_key)).observe(max(0.0, float(duration_ms)))


def record_classifier_batch(status: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _classifier_counter is not None:
        _classifier_counter.add(safe_count, {"status": status or "unknown"})
    if _prom_enabled and _prom_classifier_counter is not None:
        _prom_classifier_counter.labels(**_prom_labels(status=status)).inc(safe_count)
