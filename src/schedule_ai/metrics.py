from prometheus_client import Counter, Histogram, REGISTRY


# we check if they are already registered to avoid errors during hot reloads or test runs
def get_or_create_metric(name, documentation, metric_type, **kwargs):
    try:
        return metric_type(name, documentation, **kwargs)
    except ValueError:
        # If it already exists, retrieve it from the registry
        return REGISTRY._names_to_collectors[name]


REQUESTS_TOTAL = get_or_create_metric(
    "schedule_requests_total",
    "Total requests",
    Counter,
    labelnames=["endpoint", "status"],
)

RECORDS_PROCESSED_TOTAL = get_or_create_metric(
    "schedule_records_processed_total",
    "Import records run through AI analysis",
    Counter,
    labelnames=["outcome"],
)

AI_CALLS_TOTAL = get_or_create_metric(
    "schedule_ai_calls_total",
    "Calls to the AI collaborators",
    Counter,
    labelnames=["operation", "outcome"],
)

AI_CALL_LATENCY_SECONDS = get_or_create_metric(
    "schedule_ai_call_latency_seconds",
    "AI collaborator call latency",
    Histogram,
    labelnames=["operation"],
)

EVENTS_CONVERTED_TOTAL = get_or_create_metric(
    "schedule_events_converted_total", "Records converted into events", Counter
)

ANALYSES_TOTAL = get_or_create_metric(
    "schedule_analyses_total",
    "Schedule optimization runs by final status",
    Counter,
    labelnames=["status"],
)

NOTIFICATIONS_MARKED_TOTAL = get_or_create_metric(
    "schedule_notifications_marked_total",
    "Reminders marked as sent",
    Counter,
    labelnames=["target"],
)
