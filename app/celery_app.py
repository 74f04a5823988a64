"""Celery application configuration."""

from celery import Celery

from app.core.config import settings

# Create Celery instance
celery_app = Celery(
    "interest_connect",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.matchmaking_tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=5 * 60,  # 5 minutes
    task_soft_time_limit=4 * 60,  # 4 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Configure Celery Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "sweep-matches": {
        "task": "app.tasks.matchmaking_tasks.sweep_matches_task",
        "schedule": float(settings.connect_matchmaker_interval_seconds),
        # A sweep that waited longer than one interval is superseded by the next
        "options": {"expires": settings.connect_matchmaker_interval_seconds},
    },
    "expire-stale-requests": {
        "task": "app.tasks.matchmaking_tasks.expire_stale_requests_task",
        "schedule": float(settings.connect_search_timeout_seconds),
        "options": {"expires": settings.connect_search_timeout_seconds},
    },
}

celery_app.conf.task_routes = {
    "app.tasks.matchmaking_tasks.*": {"queue": "matchmaking"},
}
