from celery import Celery, signals
from celery.schedules import crontab

from app.core.config import settings
from app.core.logging import setup_logging

celery_app = Celery(
    "devbox",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Redis connection resilience: survive transient Redis restarts
    broker_connection_retry_on_startup=True,
    redis_retry_on_timeout=True,
    redis_socket_connect_timeout=10,
    redis_socket_timeout=10,
    result_backend_transport_options={
        "retry_policy": {
            "timeout": 5.0,
        },
    },
)

# Celery Beat periodic tasks
celery_app.conf.beat_schedule = {
    "check-server-health": {
        "task": "health.check_all_servers",
        "schedule": crontab(minute=f"*/{settings.HEALTH_CHECK_INTERVAL_MINUTES}"),
    },
}


@signals.setup_logging.connect
def configure_worker_logging(**kwargs):
    # Connecting here stops Celery from installing its own root handlers.
    setup_logging(settings.LOG_LEVEL)


celery_app.autodiscover_tasks([
    "app.workers.provisioning_tasks",
    "app.workers.server_tasks",
    "app.workers.health_tasks",
])
