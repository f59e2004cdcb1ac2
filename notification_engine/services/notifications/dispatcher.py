from datetime import datetime
from typing import Dict, List, Optional

from notification_engine.config.settings import settings
from notification_engine.db.models import (
    REMINDER_KINDS,
    NotificationKind,
    NotificationStatus,
    ScheduledNotification,
)
from notification_engine.schemas.notification_schemas import (
    DispatchResult,
    NotificationDraft,
    NotificationPolicy,
    Recipient,
    SendResult,
)
from notification_engine.services.messaging.base import MessagingTransport
from notification_engine.services.messaging.tenant_transports import TenantTransports
from notification_engine.services.notifications.base import (
    NotificationStore,
    RecipientStore,
    TemplateStore,
)
from notification_engine.services.notifications.policy_resolver import (
    CHARGE_NOTIFICATION_CLASS,
    PolicyResolver,
)
from notification_engine.services.notifications.schedule_generator import (
    ScheduleGenerator,
)
from notification_engine.services.notifications.template_renderer import (
    TemplateRenderer,
    build_variables,
    default_template,
    render,
)
from notification_engine.utils.datetime_utils import (
    from_naive_utc,
    load_zone,
    to_utc,
    utc_now,
)
from notification_engine.utils.errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    NotificationEngineError,
    StorageError,
    TransportError,
)
from notification_engine.utils.logging import get_logger

logger = get_logger()

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"
SUPERSEDED = "superseded"


class Dispatcher:
    """
    Sends due notifications and records the outcome on each row.

    Rows only ever move pending -> sent | failed here, and each move is a
    guarded update, so overlapping runs cannot overwrite each other's result.
    Failed rows are not retried; an operator can requeue them.
    """

    def __init__(
        self,
        notification_store: NotificationStore,
        recipient_store: RecipientStore,
        template_store: TemplateStore,
        transports: TenantTransports,
        policy_resolver: PolicyResolver,
        generator: Optional[ScheduleGenerator] = None,
        batch_size: Optional[int] = None,
        notification_class: str = CHARGE_NOTIFICATION_CLASS,
    ):
        self.notification_store = notification_store
        self.recipient_store = recipient_store
        self.renderer = TemplateRenderer(template_store)
        self.transports = transports
        self.policy_resolver = policy_resolver
        self.generator = generator or ScheduleGenerator()
        self.batch_size = batch_size or settings.DISPATCH_BATCH_SIZE
        self.notification_class = notification_class

    async def dispatch_due(self, now: Optional[datetime] = None) -> DispatchResult:
        now = to_utc(now or utc_now())
        result = DispatchResult()
        rows = self.notification_store.list_due(now, self.batch_size)
        policies: Dict[str, NotificationPolicy] = {}

        for row in rows:
            # read before dispatching; a rolled back session expires the row
            notification_id = row.id
            try:
                outcome = await self.dispatch_one(row, now, policies)
            except NotificationEngineError as e:
                logger.error(
                    "Failed to dispatch notification",
                    notification_id=notification_id,
                    error=e.message,
                    error_code=e.error_code,
                )
                result.errors += 1
                continue
            except Exception as e:
                logger.error(
                    "Unexpected error while dispatching notification",
                    notification_id=notification_id,
                    error=str(e),
                    exc_info=True,
                )
                result.errors += 1
                continue

            if outcome == SENT:
                result.sent += 1
            elif outcome == FAILED:
                result.failed += 1
            elif outcome == SKIPPED:
                result.skipped += 1

        if rows:
            logger.info(
                "Dispatch finished",
                due=len(rows),
                sent=result.sent,
                failed=result.failed,
                skipped=result.skipped,
                errors=result.errors,
            )
        return result

    async def dispatch_one(
        self,
        row: ScheduledNotification,
        now: datetime,
        policies: Optional[Dict[str, NotificationPolicy]] = None,
    ) -> str:
        policies = {} if policies is None else policies
        policy = policies.get(row.tenant_id)
        if policy is None:
            policy = self.policy_resolver.resolve(row.tenant_id, self.notification_class)
            policies[row.tenant_id] = policy

        # Re-enabling automation picks these rows up again
        if row.kind in REMINDER_KINDS and not policy.enabled:
            return SKIPPED

        try:
            transport = self.transports.for_tenant(row.tenant_id)
        except ConfigurationError as e:
            return self._mark_failed(row, e.message)

        recipient = self.recipient_store.resolve_recipient(row)
        if recipient is None:
            error = NotFoundError(f"Recipient not found: {row.recipient_ref}")
            return self._mark_failed(row, error.message)

        text = self.build_text(row, recipient, policy, now)

        try:
            send_result = await self._deliver(
                transport, recipient.chat_id, text, recipient.image_urls
            )
        except Exception as e:
            logger.error(
                "Transport raised while sending",
                notification_id=row.id,
                error=str(e),
                exc_info=True,
            )
            send_result = SendResult(success=False, error=f"{type(e).__name__}: {e}")

        if not send_result.success:
            error = TransportError(send_result.error or "Unknown transport error")
            return self._mark_failed(row, error.message)

        if not self.notification_store.update_status(row.id, NotificationStatus.SENT):
            logger.warning(
                "Notification changed status while sending", notification_id=row.id
            )
            return SUPERSEDED

        logger.info(
            "Notification sent",
            notification_id=row.id,
            kind=row.kind.value,
            message_id=send_result.message_id,
        )
        self._record_delivery(row, transport, send_result)
        self._schedule_next(row)
        return SENT

    def build_text(
        self,
        row: ScheduledNotification,
        recipient: Recipient,
        policy: NotificationPolicy,
        now: datetime,
    ) -> str:
        if row.kind == NotificationKind.BROADCAST:
            template = recipient.message or default_template(row.kind)
            anchor_date = None
        else:
            template = self.renderer.resolve_template(
                row.template_ref, row.kind, row.offset_days
            )
            anchor_date = row.anchor_date

        variables = build_variables(
            recipient.variables,
            anchor_date,
            now,
            load_zone(row.timezone),
            company_name=policy.company_name,
        )
        return render(template, variables)

    async def _deliver(
        self,
        transport: MessagingTransport,
        chat_id: str,
        text: str,
        image_urls: List[str],
    ) -> SendResult:
        """
        No images: one text message. One image: the text is its caption.
        Several images: each image without caption, then the text. The first
        failing part stops the sequence.
        """
        if not image_urls:
            return await transport.send_text(chat_id, text)

        if len(image_urls) == 1:
            return await transport.send_image(chat_id, image_urls[0], caption=text)

        total = len(image_urls)
        for index, image_url in enumerate(image_urls, start=1):
            part = await transport.send_image(chat_id, image_url)
            if not part.success:
                return SendResult(
                    success=False, error=f"Image {index}/{total} failed: {part.error}"
                )

        part = await transport.send_text(chat_id, text)
        if not part.success:
            return SendResult(
                success=False,
                error=f"Text after {total} images failed: {part.error}",
            )
        return part

    def _mark_failed(self, row: ScheduledNotification, error: str) -> str:
        logger.warning("Notification failed", notification_id=row.id, error=error)
        if self.notification_store.update_status(row.id, NotificationStatus.FAILED, error):
            return FAILED
        return SUPERSEDED

    def _record_delivery(
        self,
        row: ScheduledNotification,
        transport: MessagingTransport,
        send_result: SendResult,
    ) -> None:
        # The row is already sent; a missing log entry must not undo that
        try:
            self.notification_store.record_delivery(
                row, transport.name, send_result.message_id
            )
        except StorageError as e:
            logger.warning(
                "Failed to write message log", notification_id=row.id, error=e.message
            )

    def _schedule_next(self, row: ScheduledNotification) -> None:
        draft = self.generator.next_occurrence(row)
        if draft is None:
            return
        if self.notification_store.insert_if_absent(draft):
            logger.info(
                "Scheduled next occurrence",
                subject_id=row.subject_id,
                scheduled_for=draft.scheduled_for.isoformat(),
            )
        else:
            logger.debug("Next occurrence already scheduled", subject_id=row.subject_id)

    def requeue_failed(
        self, notification_id: str, now: Optional[datetime] = None
    ) -> NotificationDraft:
        return requeue_failed(self.notification_store, notification_id, now)


def requeue_failed(
    notification_store: NotificationStore,
    notification_id: str,
    now: Optional[datetime] = None,
) -> NotificationDraft:
    """
    Insert a pending copy of a failed row, due immediately.

    The failed row stays failed. Raises NotFoundError for an unknown id and
    ConflictError when the row is not failed or an active copy already exists.
    """
    now = to_utc(now or utc_now())
    row = notification_store.get(notification_id)
    if row is None:
        raise NotFoundError(f"Notification not found: {notification_id}")
    if row.status != NotificationStatus.FAILED:
        raise ConflictError(
            f"Only failed notifications can be requeued, {notification_id} is "
            f"{row.status.value}"
        )

    zone = load_zone(row.timezone)
    scheduled_for = max(from_naive_utc(row.scheduled_for, zone), now.astimezone(zone))
    draft = NotificationDraft(
        tenant_id=row.tenant_id,
        subject_id=row.subject_id,
        recipient_ref=row.recipient_ref,
        anchor_date=row.anchor_date,
        kind=row.kind,
        offset_days=row.offset_days,
        scheduled_for=scheduled_for,
        timezone=zone.key,
        template_ref=row.template_ref,
        recurrence=row.recurrence,
    )
    if not notification_store.insert_if_absent(draft):
        raise ConflictError(f"An active notification already exists for {notification_id}")
    logger.info("Requeued failed notification", notification_id=notification_id)
    return draft
