"""Observability module for OpenTelemetry-aligned tracing, metrics, and logging."""

from docs_retrieval.observability.context import bind_owner, get_trace_context, set_trace_context, trace_context
from docs_retrieval.observability.logging import JsonFormatter, configure_logging
from docs_retrieval.observability.metrics import (
    ADMISSION_ACTIVE,
    ADMISSION_QUEUED,
    CACHE_EVENTS,
    INDEXED_DOCUMENTS,
    OPERATION_TIMEOUTS,
    SEARCH_COUNT,
    SEARCH_LATENCY,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    track_latency,
)
from docs_retrieval.observability.search_stats import SearchSample, SearchStatsCollector
from docs_retrieval.observability.tracing import create_span, get_tracer, init_tracing


__all__ = [
    "ADMISSION_ACTIVE",
    "ADMISSION_QUEUED",
    "CACHE_EVENTS",
    "INDEXED_DOCUMENTS",
    "OPERATION_TIMEOUTS",
    "SEARCH_COUNT",
    "SEARCH_LATENCY",
    "JsonFormatter",
    "SearchSample",
    "SearchStatsCollector",
    "bind_owner",
    "configure_logging",
    "create_span",
    "get_metrics",
    "get_metrics_content_type",
    "get_trace_context",
    "get_tracer",
    "init_metrics",
    "init_tracing",
    "set_trace_context",
    "trace_context",
    "track_latency",
]
