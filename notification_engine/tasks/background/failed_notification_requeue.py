from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.services.notifications.dispatcher import requeue_failed
from notification_engine.services.notifications.repository import SqlNotificationStore
from notification_engine.utils.context import request_id_scope
from notification_engine.utils.errors import NotificationEngineError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=0)
def requeue_failed_notification_task(self, request_id: str, notification_id: str):
    """
    Operator action: schedule a fresh pending copy of a failed notification.
    The failed row keeps its status and error for the audit trail.

    Args:
        request_id: The request ID from the original HTTP request
        notification_id: ID of the failed scheduled notification
    """
    with request_id_scope(request_id):
        return _requeue_failed_notification(request_id, notification_id)


def _requeue_failed_notification(request_id: str, notification_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            draft = requeue_failed(SqlNotificationStore(db_session), notification_id)
            return {
                "success": True,
                "notification_id": notification_id,
                "scheduled_for": draft.scheduled_for.isoformat(),
                "request_id": request_id,
            }

        except NotificationEngineError as e:
            logger.warning(
                "Failed notification was not requeued",
                notification_id=notification_id,
                error=e.message,
                error_code=e.error_code,
            )
            return {
                "success": False,
                "error": e.message,
                "error_code": e.error_code,
                "request_id": request_id,
            }
