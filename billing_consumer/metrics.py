"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


CONSUMER_MESSAGE_TOTAL = Counter(
    "billing_consumer_message_total", "Dispositions sent to the broker", ["disposition"]
)
CONSUMER_REDELIVERED_TOTAL = Counter(
    "billing_consumer_redelivered_total", "Deliveries flagged as redelivered by the broker"
)
CONSUMER_PROCESS_LATENCY_SECONDS = Histogram(
    "billing_consumer_process_latency_seconds",
    "Time from pulling a delivery to issuing its disposition",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 2, 5),
)
PERSIST_WRITE_TOTAL = Counter(
    "billing_persist_write_total", "Persistence attempts by result", ["result"]  # saved | parse_error | io_error
)


def start_metrics_server(port: int = 9102) -> None:
    start_http_server(port)
