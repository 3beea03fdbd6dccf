"""Prometheus metrics for the document analyzer.

Exposes key metrics for monitoring:
- Document submissions and terminal outcomes
- Extraction duration and rate-limit retries
- Duplicate check outcomes
- Processing queue depth

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# Submission metrics
documents_submitted_total = Counter(
    "documents_submitted_total",
    "Total documents accepted for processing",
)

document_upload_size_bytes = Histogram(
    "document_upload_size_bytes",
    "Submitted document size in bytes",
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)

# Pipeline metrics
documents_processed_total = Counter(
    "documents_processed_total",
    "Documents that reached a terminal state",
    ["status"],  # done, failed
)

extraction_duration_seconds = Histogram(
    "extraction_duration_seconds",
    "Time spent in the extraction service per document",
    ["provider"],
    buckets=(1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

extraction_rate_limited_total = Counter(
    "extraction_rate_limited_total",
    "Rate-limit responses received from the extraction service",
    ["step"],  # submit, poll
)

duplicate_checks_total = Counter(
    "duplicate_checks_total",
    "Duplicate invoice checks by outcome",
    ["outcome"],  # duplicate, unique, unavailable
)

# Queue metrics
queue_backlog = Gauge(
    "processing_queue_backlog",
    "Documents waiting for a processing slot",
)

queue_active_jobs = Gauge(
    "processing_queue_active_jobs",
    "Documents currently being processed",
)


def start_metrics_server(port: int) -> None:
    """Expose metrics over HTTP on the given port."""
    start_http_server(port)
