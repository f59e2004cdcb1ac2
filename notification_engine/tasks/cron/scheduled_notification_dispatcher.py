import asyncio

from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.services.messaging.tenant_transports import TenantTransports
from notification_engine.services.notifications.factory import create_dispatcher
from notification_engine.services.notifications.repository import SqlSettingsStore
from notification_engine.utils.context import request_id_scope
from notification_engine.utils.datetime_utils import utc_now
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=0)
def scheduled_notification_dispatcher_task(self, request_id: str):
    """
    Every-minute task that sends all pending notifications that are due.

    Sent and failed rows are final; failures are recorded on the row and are
    not retried here, since a blind resend can deliver a message twice.

    Args:
        request_id: Request ID for tracking purposes
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_scheduled_notification_dispatcher(request_id))


async def _async_scheduled_notification_dispatcher(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            now = utc_now()
            async with TenantTransports(SqlSettingsStore(db_session)) as transports:
                dispatcher = create_dispatcher(db_session, transports=transports)
                result = await dispatcher.dispatch_due(now)

            return {
                "success": True,
                "sent": result.sent,
                "failed": result.failed,
                "skipped": result.skipped,
                "errors": result.errors,
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Scheduled notification dispatcher task exception",
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }
