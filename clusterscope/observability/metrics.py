"""Prometheus metrics for aggregation passes and policy resolution."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

aggregation_passes_total = Counter(
    "clusterscope_aggregation_passes_total",
    "Aggregation passes by outcome",
    ["result"],  # success | listing_error | timeout | cancelled
)

aggregation_duration_seconds = Histogram(
    "clusterscope_aggregation_duration_seconds",
    "Duration of successful aggregation passes",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

snapshot_entities = Gauge(
    "clusterscope_snapshot_entities",
    "Entities in the latest published snapshot",
    ["kind"],
)

acp_resolutions_total = Counter(
    "clusterscope_acp_resolutions_total",
    "Access control policy resolutions by method and outcome",
    ["method", "result"],
)
