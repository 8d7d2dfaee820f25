from prometheus_client import Counter, Histogram, Gauge, REGISTRY

from sync.metrics import SyncMetrics


# we check if they are already registered to avoid errors during hot reloads or test runs
def get_or_create_metric(name, documentation, metric_type, **kwargs):
    try:
        return metric_type(name, documentation, **kwargs)
    except ValueError:
        return REGISTRY._names_to_collectors[name]


SYNC_CYCLES_TOTAL = get_or_create_metric(
    "calsync_cycles_total",
    "Completed sync cycles",
    Counter,
    labelnames=["outcome"],
)

SYNC_CYCLE_DURATION_SECONDS = get_or_create_metric(
    "calsync_cycle_duration_seconds", "Sync cycle duration", Histogram
)

SYNC_IN_PROGRESS = get_or_create_metric(
    "calsync_cycle_in_progress", "1 while a sync cycle is running", Gauge
)

INTEGRATIONS_TOTAL = get_or_create_metric(
    "calsync_integrations_total",
    "Integrations synced",
    Counter,
    labelnames=["outcome"],
)

INTEGRATION_DURATION_SECONDS = get_or_create_metric(
    "calsync_integration_duration_seconds", "Per-integration sync duration", Histogram
)

API_CALLS_TOTAL = get_or_create_metric(
    "calsync_api_calls_total",
    "Remote calendar API calls",
    Counter,
    labelnames=["operation", "outcome"],
)

API_CALL_LATENCY_SECONDS = get_or_create_metric(
    "calsync_api_call_latency_seconds",
    "Remote calendar API latency",
    Histogram,
    labelnames=["operation"],
)

RATE_LIMIT_HITS_TOTAL = get_or_create_metric(
    "calsync_rate_limit_hits_total",
    "Times a call had to wait for rate limit capacity",
    Counter,
    labelnames=["source"],
)

ERRORS_TOTAL = get_or_create_metric(
    "calsync_errors_total", "Errors by category", Counter, labelnames=["category"]
)

EVENTS_PROCESSED_TOTAL = get_or_create_metric(
    "calsync_events_processed_total",
    "Appointment changes applied by the sync",
    Counter,
    labelnames=["action"],
)


def _outcome(success: bool) -> str:
    return "success" if success else "failure"


class PrometheusSyncMetrics(SyncMetrics):
    def cycle_started(self) -> None:
        SYNC_IN_PROGRESS.set(1)

    def cycle_finished(self, duration_s, success, processed, succeeded, failed) -> None:
        SYNC_IN_PROGRESS.set(0)
        SYNC_CYCLES_TOTAL.labels(outcome=_outcome(success)).inc()
        SYNC_CYCLE_DURATION_SECONDS.observe(duration_s)

    def integration_started(self, integration_id) -> None:
        pass

    def integration_succeeded(self, integration_id, duration_s, events_processed) -> None:
        INTEGRATIONS_TOTAL.labels(outcome="success").inc()
        INTEGRATION_DURATION_SECONDS.observe(duration_s)

    def integration_failed(self, integration_id, duration_s, category) -> None:
        INTEGRATIONS_TOTAL.labels(outcome="failure").inc()
        INTEGRATION_DURATION_SECONDS.observe(duration_s)
        ERRORS_TOTAL.labels(category=category).inc()

    def api_call(self, operation, duration_s, success) -> None:
        API_CALLS_TOTAL.labels(operation=operation, outcome=_outcome(success)).inc()
        API_CALL_LATENCY_SECONDS.labels(operation=operation).observe(duration_s)

    def rate_limit_hit(self, source) -> None:
        RATE_LIMIT_HITS_TOTAL.labels(source=source).inc()

    def error(self, category) -> None:
        ERRORS_TOTAL.labels(category=category).inc()

    def event_processed(self, action) -> None:
        EVENTS_PROCESSED_TOTAL.labels(action=action).inc()
