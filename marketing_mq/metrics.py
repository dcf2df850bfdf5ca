"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge, start_http_server


# Consumer metrics
CONSUMER_DELIVERY_TOTAL = Counter(
    "consumer_delivery_total", "Deliveries resolved by consumers", ["queue", "outcome"]
)
CONSUMER_PROCESS_LATENCY_SECONDS = Histogram(
    "consumer_process_latency_seconds",
    "Time spent in the processing callable for a single delivery",
    ["queue"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5),
)
CONSUMER_RETRY_TOTAL = Counter(
    "consumer_retry_total", "Deliveries requeued for another attempt", ["queue"]
)
CONSUMER_DLQ_TOTAL = Counter(
    "consumer_dlq_total", "Deliveries rejected after exhausting retries", ["queue"]
)
CONSUMER_POISON_TOTAL = Counter(
    "consumer_poison_total", "Undecodable deliveries rejected without requeue", ["queue"]
)
CONSUMER_REDELIVERED_TOTAL = Counter(
    "consumer_redelivered_total", "Deliveries flagged as redelivered by the broker", ["queue"]
)
CONSUMER_IN_FLIGHT = Gauge(
    "consumer_in_flight", "Deliveries received and not yet resolved", ["queue"]
)
QUEUE_DEPTH = Gauge(
    "queue_depth", "Ready messages in the queue", ["queue"]
)
QUEUE_CONSUMERS = Gauge(
    "queue_consumers", "Consumers attached to the queue", ["queue"]
)

# Publisher metrics
PUBLISH_ATTEMPT_TOTAL = Counter(
    "publish_attempt_total", "Total publish attempts", ["kind", "result"]
)
PUBLISH_FAILED_TOTAL = Counter(
    "publish_failed_total", "Total publish failures", ["reason"]
)

# Operator metrics
DLQ_REPLAY_TOTAL = Counter(
    "dlq_replay_total", "Messages moved from a dead-letter queue back to the exchange", ["queue"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
