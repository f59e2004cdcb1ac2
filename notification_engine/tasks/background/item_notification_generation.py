from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.services.notifications.factory import create_reconciler
from notification_engine.utils.context import request_id_scope
from notification_engine.utils.errors import NotificationEngineError
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def generate_item_notifications_task(self, request_id: str, item_id: str):
    """
    Generate reminder rows for one item without waiting for the next
    reconciler run. Queue it after an item is created or its due date changes.

    Args:
        request_id: The request ID from the original HTTP request
        item_id: ID of the customer item
    """
    with request_id_scope(request_id):
        return _generate_item_notifications(request_id, item_id)


def _generate_item_notifications(request_id: str, item_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            result = create_reconciler(db_session).generate_for_item(item_id)
            return {
                "success": True,
                "item_id": item_id,
                "generated": result.generated,
                "request_id": request_id,
            }

        except NotificationEngineError as e:
            logger.warning(
                "Item notification generation skipped",
                item_id=item_id,
                error=e.message,
                error_code=e.error_code,
            )
            return {
                "success": False,
                "error": e.message,
                "error_code": e.error_code,
                "request_id": request_id,
            }
