"""
Publish metrics, registered in the Prometheus global REGISTRY on import.
"""

from prometheus_client import Counter, Histogram

SYNC_RUNS_TOTAL = Counter(
    "sync_runs_total",
    "Publish runs by final outcome",
    ["target", "outcome"],
)

SYNC_BATCHES_TOTAL = Counter(
    "sync_batches_total",
    "Batch upload attempts by outcome",
    ["target", "outcome"],
)

SYNC_BATCH_SHRINKS_TOTAL = Counter(
    "sync_batch_shrinks_total",
    "Batch size halvings after overload responses",
    ["target"],
)

SYNC_RETRIES_TOTAL = Counter(
    "sync_retries_total",
    "Batch retries by error class",
    ["target", "kind"],
)

SYNC_ROWS_UPLOADED_TOTAL = Counter(
    "sync_rows_uploaded_total",
    "Rows confirmed written by the store",
    ["target"],
)

SYNC_BATCH_LATENCY_MS = Histogram(
    "sync_batch_latency_ms",
    "Batch upload latency in milliseconds",
    ["target"],
    buckets=[10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)


class MetricsRegistry:
    """Structured access to the publish metrics."""

    runs_total = SYNC_RUNS_TOTAL
    batches_total = SYNC_BATCHES_TOTAL
    batch_shrinks_total = SYNC_BATCH_SHRINKS_TOTAL
    retries_total = SYNC_RETRIES_TOTAL
    rows_uploaded_total = SYNC_ROWS_UPLOADED_TOTAL
    batch_latency_ms = SYNC_BATCH_LATENCY_MS


# Singleton instance
metrics_registry = MetricsRegistry()
