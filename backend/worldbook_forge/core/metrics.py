"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

REGISTRY = CollectorRegistry()

TASKS_TOTAL = Counter(
    "wbf_tasks_total",
    "Scheduler tasks reaching a terminal status",
    labelnames=("status",),
    registry=REGISTRY,
)

TASK_RETRIES = Counter(
    "wbf_task_retries_total",
    "Retry attempts scheduled after a task failure",
    registry=REGISTRY,
)

PARSE_STRATEGY = Counter(
    "wbf_parse_strategy_total",
    "Response repair strategy that produced a parse",
    labelnames=("strategy",),
    registry=REGISTRY,
)

PARSE_FAILURES = Counter(
    "wbf_parse_failures_total",
    "Responses no repair strategy could parse",
    registry=REGISTRY,
)

MERGE_CHANGES = Counter(
    "wbf_merge_changes_total",
    "Entry changes produced by merges",
    labelnames=("type",),
    registry=REGISTRY,
)

DUPLICATE_GROUPS = Counter(
    "wbf_duplicate_groups_total",
    "Confirmed duplicate groups folded into a canonical entry",
    registry=REGISTRY,
)

WORLDBOOK_ENTRIES = Gauge(
    "wbf_worldbook_entries",
    "Number of entries in the live worldbook",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "TASKS_TOTAL",
    "TASK_RETRIES",
    "PARSE_STRATEGY",
    "PARSE_FAILURES",
    "MERGE_CHANGES",
    "DUPLICATE_GROUPS",
    "WORLDBOOK_ENTRIES",
    "metrics_response",
]
