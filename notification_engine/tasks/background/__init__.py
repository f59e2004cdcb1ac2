from .failed_notification_requeue import requeue_failed_notification_task
from .item_notification_generation import generate_item_notifications_task
from .tenant_notification_regeneration import regenerate_tenant_notifications_task

__all__ = [
    "generate_item_notifications_task",
    "regenerate_tenant_notifications_task",
    "requeue_failed_notification_task",
]
