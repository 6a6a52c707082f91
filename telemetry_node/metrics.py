"""
Prometheus metrics for the telemetry sync node.
Exposes /metrics for sync throughput, circuit rejections, notifications and task runs.
"""
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server, REGISTRY

logger = logging.getLogger(__name__)

# Counters - Sync results
sync_records_synced_total = Counter(
    "telemetry_sync_records_synced_total",
    "Total readings persisted by the sync adapters",
    ["family"],
    registry=REGISTRY,
)
sync_records_failed_total = Counter(
    "telemetry_sync_records_failed_total",
    "Total devices or cities that failed to sync",
    ["family"],
    registry=REGISTRY,
)
sync_records_skipped_total = Counter(
    "telemetry_sync_records_skipped_total",
    "Total devices skipped (interval not elapsed, duplicate or no reading)",
    ["family"],
    registry=REGISTRY,
)

# Counters - Sources
circuit_rejections_total = Counter(
    "telemetry_circuit_rejections_total",
    "Calls skipped because the source circuit was open",
    ["source"],
    registry=REGISTRY,
)
circuit_opened_total = Counter(
    "telemetry_circuit_opened_total",
    "Times a source circuit moved to OPEN",
    ["source"],
    registry=REGISTRY,
)

# Counters - Notifications / uploads
notifications_total = Counter(
    "telemetry_notifications_total",
    "Offline notifications dispatched",
    ["outcome"],
    registry=REGISTRY,
)
uploads_total = Counter(
    "telemetry_uploads_total",
    "Readings forwarded to the reporting agency",
    ["family", "outcome"],
    registry=REGISTRY,
)

# Counters / Histograms - Scheduled tasks
task_runs_total = Counter(
    "telemetry_task_runs_total",
    "Scheduled task runs",
    ["task", "outcome"],
    registry=REGISTRY,
)
task_duration_seconds = Histogram(
    "telemetry_task_duration_seconds",
    "Time spent in a scheduled task",
    ["task"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0],
    registry=REGISTRY,
)

# Gauges
devices_offline = Gauge(
    "telemetry_devices_offline",
    "Devices that went offline on the last online check",
    ["family"],
    registry=REGISTRY,
)


def start_metrics_server(port: int = 9095) -> None:
    """Start the Prometheus metrics HTTP server in a daemon thread."""
    try:
        start_http_server(port, addr="0.0.0.0")
        logger.info("Metrics server started on port %s", port)
    except OSError as e:
        logger.warning("Could not start metrics server on port %s: %s", port, e)


def record_sync_result(family: str, synced: int, failed: int, skipped: int) -> None:
    """Record one adapter run."""
    if synced > 0:
        sync_records_synced_total.labels(family=family).inc(synced)
    if failed > 0:
        sync_records_failed_total.labels(family=family).inc(failed)
    if skipped > 0:
        sync_records_skipped_total.labels(family=family).inc(skipped)


def record_circuit_rejection(source: str) -> None:
    circuit_rejections_total.labels(source=source).inc()


def record_circuit_opened(source: str) -> None:
    circuit_opened_total.labels(source=source).inc()


def record_notification(success: bool) -> None:
    notifications_total.labels(outcome="sent" if success else "failed").inc()


def record_upload(family: str, success: bool) -> None:
    uploads_total.labels(family=family, outcome="sent" if success else "failed").inc()


def record_task_run(task: str, success: bool, duration_seconds: float) -> None:
    """Record a scheduled task run and its duration."""
    task_runs_total.labels(task=task, outcome="success" if success else "error").inc()
    task_duration_seconds.labels(task=task).observe(duration_seconds)


def set_devices_offline(family: str, count: int) -> None:
    devices_offline.labels(family=family).set(count)
