"""Prometheus metrics for the sync engine."""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)

SYNC_RUNS = Counter(
    "drive_mirror_sync_runs_total",
    "Sync runs by final state",
    ["outcome"],
)

SYNC_RECORDS = Counter(
    "drive_mirror_sync_records_total",
    "Reconciled records by kind and decision",
    ["kind", "action"],
)

SYNC_PRUNED = Counter(
    "drive_mirror_sync_pruned_total",
    "Orphaned records removed by the pruner",
    ["kind"],
)

SYNC_DURATION = Histogram(
    "drive_mirror_sync_duration_seconds",
    "Wall-clock duration of sync runs",
    buckets=(1, 5, 15, 60, 300, 900, 1800, 3600, float("inf")),
)

__all__ = [
    "CONTENT_TYPE_LATEST",
    "REGISTRY",
    "SYNC_RUNS",
    "SYNC_RECORDS",
    "SYNC_PRUNED",
    "SYNC_DURATION",
    "generate_latest",
]
