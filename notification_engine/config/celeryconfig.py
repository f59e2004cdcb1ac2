from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = settings.redis_url
result_backend = settings.redis_url

# Task Discovery
include = ["notification_engine.tasks"]

# Timezone Configuration
timezone = settings.DEFAULT_TIMEZONE
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 15 * 60  # 15 minutes
task_soft_time_limit = 12 * 60  # 12 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Message sends are not idempotent; a lost worker must not replay a dispatch batch
task_acks_late = False
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3

_RECONCILER_TASK = (
    "notification_engine.tasks.cron.charge_queue_reconciler.charge_queue_reconciler_task"
)

# All scheduled tasks use the DEFAULT_TIMEZONE
beat_schedule = {
    # Queue reconciliation - tight cadence during the morning collection window
    "charge-queue-reconciler-morning": {
        "task": _RECONCILER_TASK,
        "schedule": crontab(minute="*/5", hour="7-11"),
        "args": ("charge_queue_reconciler_morning_cron",),
    },
    "charge-queue-reconciler-afternoon": {
        "task": _RECONCILER_TASK,
        "schedule": crontab(minute=0, hour="12-18"),
        "args": ("charge_queue_reconciler_afternoon_cron",),
    },
    "charge-queue-reconciler-night": {
        "task": _RECONCILER_TASK,
        "schedule": crontab(minute=30, hour="18,21,0,3,6"),
        "args": ("charge_queue_reconciler_night_cron",),
    },
    # Dispatch - every minute
    "scheduled-notification-dispatcher": {
        "task": "notification_engine.tasks.cron.scheduled_notification_dispatcher.scheduled_notification_dispatcher_task",
        "schedule": crontab(),
        "args": ("scheduled_notification_dispatcher_cron",),
    },
}

# Default Queue
task_default_queue = "notifications"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
