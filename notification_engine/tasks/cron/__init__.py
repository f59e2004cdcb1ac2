from .charge_queue_reconciler import charge_queue_reconciler_task
from .scheduled_notification_dispatcher import scheduled_notification_dispatcher_task

__all__ = [
    "charge_queue_reconciler_task",
    "scheduled_notification_dispatcher_task",
]
