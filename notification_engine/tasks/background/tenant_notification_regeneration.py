from notification_engine.celery import celery
from notification_engine.db.session import get_sync_session
from notification_engine.services.notifications.factory import create_reconciler
from notification_engine.utils.context import request_id_scope
from notification_engine.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def regenerate_tenant_notifications_task(self, request_id: str, tenant_id: str):
    """
    Rebuild a tenant's pending reminders after its policy changed.

    Pending reminder rows are cancelled and generated again from the current
    offsets, send time and templates. Sent rows are left untouched.

    Args:
        request_id: The request ID from the original HTTP request
        tenant_id: Tenant whose queue should be rebuilt
    """
    with request_id_scope(request_id):
        return _regenerate_tenant_notifications(request_id, tenant_id)


def _regenerate_tenant_notifications(request_id: str, tenant_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            result = create_reconciler(db_session).regenerate_tenant(tenant_id)
            return {
                "success": True,
                "tenant_id": tenant_id,
                "cancelled": result.cancelled,
                "generated": result.generated,
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Tenant notification regeneration failed",
                tenant_id=tenant_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }
