"""Prometheus metrics for monitoring sync health, classification outcomes and external latency"""

from prometheus_client import Counter, Histogram

# Sync metrics
sync_run_counter = Counter(
    "writeoff_sync_runs_total",
    "Sync runs by outcome",
    ["outcome"],  # completed | aggregator_error | persistence_error | locked | lease_lost
)

sync_pages_committed_counter = Counter(
    "writeoff_sync_pages_committed_total",
    "Aggregator pages merged, persisted and checkpointed",
)

transactions_upserted_counter = Counter(
    "writeoff_transactions_upserted_total",
    "Transactions written by sync merges",
)

transactions_removed_counter = Counter(
    "writeoff_transactions_removed_total",
    "Transactions soft-deleted on aggregator removal",
)

# Aggregator API metrics
aggregator_latency_histogram = Histogram(
    "aggregator_latency_seconds",
    "Aggregator API response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

aggregator_failures_counter = Counter(
    "aggregator_failures_total",
    "Failed aggregator calls after retries",
)

# Classification metrics
classification_counter = Counter(
    "writeoff_classifications_total",
    "Classification attempts by result",
    ["result"],  # analyzed | rejected | failed | unauthorized | skipped
)

classifier_latency_histogram = Histogram(
    "classifier_latency_seconds",
    "Classifier API response time",
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_classification(result: str) -> None:
    classification_counter.labels(result=result).inc()


def record_sync_outcome(outcome: str) -> None:
    sync_run_counter.labels(outcome=outcome).inc()
