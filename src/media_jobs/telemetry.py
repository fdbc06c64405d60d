from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

REGISTRY = CollectorRegistry()

# Queues
queue_started = Counter(
    "media_jobs_queue_started",
    "Queue start commands accepted",
    labelnames=("queue",),
    registry=REGISTRY,
)
queue_active = Gauge(
    "media_jobs_queue_active",
    "Jobs currently running in this process",
    labelnames=("queue",),
    registry=REGISTRY,
)

# Jobs
jobs_total = Counter(
    "media_jobs_jobs",
    "Jobs finished by job name and terminal status",
    labelnames=("job", "status"),
    registry=REGISTRY,
)


def render_latest() -> tuple:
    """Exposition body and content type for a /metrics response."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
