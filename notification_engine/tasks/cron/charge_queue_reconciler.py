from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.services.notifications.factory import create_reconciler
from notification_engine.utils.context import request_id_scope
from notification_engine.utils.datetime_utils import utc_now
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def charge_queue_reconciler_task(self, request_id: str):
    """
    Periodic task that keeps the notification queue consistent.

    1. Cancels pending rows whose item was paid or cancelled, whose customer
       paid recently, or whose broadcast was deactivated
    2. Generates the rows the current tenant policies call for

    Runs every 5 minutes in the morning, hourly in the afternoon and every
    3 hours overnight (see celeryconfig.beat_schedule).

    Args:
        request_id: Request ID for tracking purposes
    """
    with request_id_scope(request_id):
        return _run_charge_queue_reconciler(request_id)


def _run_charge_queue_reconciler(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            started_at = utc_now()
            logger.info(
                "Starting charge queue reconciler task",
                started_at=started_at.isoformat(),
            )

            result = create_reconciler(db_session).reconcile(started_at)

            return {
                "success": True,
                "cancelled": result.cancelled,
                "generated": result.generated,
                "errors": result.errors,
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Charge queue reconciler task exception",
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }
