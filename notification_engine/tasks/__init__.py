from .background import *
from .cron import *

__all__ = [
    # Background Tasks
    "generate_item_notifications_task",
    "regenerate_tenant_notifications_task",
    "requeue_failed_notification_task",
    # Scheduled/Cron Tasks
    "charge_queue_reconciler_task",
    "scheduled_notification_dispatcher_task",
]
