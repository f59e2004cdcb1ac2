import json
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from notification_engine.config.settings import settings
from notification_engine.db.models import (
    ACTIVE_NOTIFICATION_STATUSES,
    ChargeStatus,
    Customer,
    CustomerCharge,
    CustomerItem,
    CustomerStatus,
    GroupMessageSchedule,
    ItemStatus,
    MessageLog,
    MessageTemplate,
    NotificationKind,
    NotificationStatus,
    ScheduledNotification,
    TenantSetting,
    TERMINAL_ITEM_STATUSES,
)
from notification_engine.schemas.notification_schemas import (
    BroadcastDefinition,
    DedupKey,
    NotificationDraft,
    Recipient,
    Subject,
)
from notification_engine.services.notifications.base import (
    NotificationStore,
    RecipientStore,
    SettingsStore,
    SubjectStore,
    TemplateStore,
)
from notification_engine.utils.datetime_utils import naive_utc_now, to_naive_utc
from notification_engine.utils.errors import StorageError
from notification_engine.utils.logging import get_logger

logger = get_logger()

GENERATION_ITEM_STATUSES = (ItemStatus.ACTIVE, ItemStatus.PENDING)


def parse_image_urls(raw: Optional[str]) -> List[str]:
    """Image URLs are stored as a JSON array; anything else means no images."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed image_urls value", raw=raw[:200])
        return []
    if not isinstance(value, list):
        return []
    return [str(url).strip() for url in value if isinstance(url, str) and url.strip()]


class SqlSettingsStore(SettingsStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    def get_tenant_settings(self, tenant_id: str, keys: List[str]) -> Dict[str, str]:
        try:
            rows = self.db.execute(
                select(TenantSetting.key, TenantSetting.value).where(
                    and_(TenantSetting.tenant_id == tenant_id, TenantSetting.key.in_(keys))
                )
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to read settings for tenant {tenant_id}: {e}")
        return {row.key: row.value for row in rows if row.value is not None}

    def list_tenants_with_setting(self, key: str, value: str) -> List[str]:
        try:
            rows = self.db.scalars(
                select(TenantSetting.tenant_id)
                .where(and_(TenantSetting.key == key, TenantSetting.value == value))
                .distinct()
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to list tenants for setting {key}: {e}")
        return list(rows)


class SqlSubjectStore(SubjectStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    @staticmethod
    def _to_subject(item: CustomerItem, tenant_id: str) -> Subject:
        return Subject(
            id=item.id,
            tenant_id=tenant_id,
            customer_id=item.customer_id,
            anchor_date=item.due_date,
            status=item.status.value,
        )

    def get_upcoming_subjects(
        self, tenant_id: str, from_date: date, to_date: date
    ) -> List[Subject]:
        try:
            items = self.db.scalars(
                select(CustomerItem)
                .join(Customer, Customer.id == CustomerItem.customer_id)
                .where(
                    and_(
                        Customer.tenant_id == tenant_id,
                        Customer.status == CustomerStatus.ACTIVE,
                        CustomerItem.status.in_(GENERATION_ITEM_STATUSES),
                        CustomerItem.due_date.is_not(None),
                        CustomerItem.due_date >= from_date,
                        CustomerItem.due_date <= to_date,
                    )
                )
                .order_by(CustomerItem.due_date)
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to load subjects for tenant {tenant_id}: {e}")
        return [self._to_subject(item, tenant_id) for item in items]

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        try:
            row = self.db.execute(
                select(CustomerItem, Customer.tenant_id)
                .join(Customer, Customer.id == CustomerItem.customer_id)
                .where(CustomerItem.id == subject_id)
            ).first()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to load item {subject_id}: {e}")
        if not row:
            return None
        item, tenant_id = row
        return self._to_subject(item, tenant_id)

    def get_subject_terminal_statuses(self, subject_ids: Iterable[str]) -> Set[str]:
        ids = list(set(subject_ids))
        if not ids:
            return set()
        try:
            rows = self.db.scalars(
                select(CustomerItem.id).where(
                    and_(
                        CustomerItem.id.in_(ids),
                        CustomerItem.status.in_(TERMINAL_ITEM_STATUSES),
                    )
                )
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to read item statuses: {e}")
        return set(rows)

    def get_recently_paid_customers(
        self, customer_ids: Iterable[str], since: datetime
    ) -> Set[str]:
        ids = list(set(customer_ids))
        if not ids:
            return set()
        try:
            rows = self.db.scalars(
                select(CustomerCharge.customer_id)
                .where(
                    and_(
                        CustomerCharge.customer_id.in_(ids),
                        CustomerCharge.status == ChargeStatus.PAID,
                        CustomerCharge.paid_at >= to_naive_utc(since),
                    )
                )
                .distinct()
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to read recent payments: {e}")
        return set(rows)

    def list_active_broadcasts(
        self, tenant_id: Optional[str] = None
    ) -> List[BroadcastDefinition]:
        stmt = select(GroupMessageSchedule).where(GroupMessageSchedule.is_active.is_(True))
        if tenant_id is not None:
            stmt = stmt.where(GroupMessageSchedule.tenant_id == tenant_id)
        try:
            rows = self.db.scalars(stmt).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to load broadcast definitions: {e}")
        return [
            BroadcastDefinition(
                id=row.id,
                tenant_id=row.tenant_id,
                scheduled_at=row.scheduled_at,
                timezone=row.timezone,
                recurrence=row.recurrence,
                is_active=row.is_active,
            )
            for row in rows
        ]

    def get_inactive_broadcasts(self, broadcast_ids: Iterable[str]) -> Set[str]:
        ids = set(broadcast_ids)
        if not ids:
            return set()
        try:
            active = set(
                self.db.scalars(
                    select(GroupMessageSchedule.id).where(
                        and_(
                            GroupMessageSchedule.id.in_(ids),
                            GroupMessageSchedule.is_active.is_(True),
                        )
                    )
                ).all()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to read broadcast definitions: {e}")
        return ids - active


class SqlNotificationStore(NotificationStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    def insert_if_absent(self, draft: NotificationDraft) -> bool:
        row = ScheduledNotification(
            tenant_id=draft.tenant_id,
            subject_id=draft.subject_id,
            recipient_ref=draft.recipient_ref,
            anchor_date=draft.anchor_date,
            kind=draft.kind,
            offset_days=draft.offset_days,
            scheduled_for=to_naive_utc(draft.scheduled_for),
            timezone=draft.timezone,
            template_ref=draft.template_ref,
            status=NotificationStatus.PENDING,
            recurrence=draft.recurrence,
        )
        try:
            # SAVEPOINT so a duplicate does not roll back the caller's batch
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError:
            logger.debug(
                "Dedup key already scheduled",
                subject_id=draft.subject_id,
                kind=draft.kind.value,
                offset_days=draft.offset_days,
            )
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(
                f"Failed to insert notification for subject {draft.subject_id}: {e}"
            )
        self.db.commit()
        return True

    def list_pending(
        self,
        tenant_id: Optional[str] = None,
        subject_ids: Optional[Iterable[str]] = None,
    ) -> List[ScheduledNotification]:
        stmt = select(ScheduledNotification).where(
            ScheduledNotification.status == NotificationStatus.PENDING
        )
        if tenant_id is not None:
            stmt = stmt.where(ScheduledNotification.tenant_id == tenant_id)
        if subject_ids is not None:
            stmt = stmt.where(ScheduledNotification.subject_id.in_(list(subject_ids)))
        try:
            return list(self.db.scalars(stmt).all())
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to list pending notifications: {e}")

    def list_due(self, now: datetime, limit: int) -> List[ScheduledNotification]:
        try:
            return list(
                self.db.scalars(
                    select(ScheduledNotification)
                    .where(
                        and_(
                            ScheduledNotification.status == NotificationStatus.PENDING,
                            ScheduledNotification.scheduled_for <= to_naive_utc(now),
                        )
                    )
                    .order_by(ScheduledNotification.scheduled_for)
                    .limit(limit)
                ).all()
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to list due notifications: {e}")

    def list_active_dedup_keys(
        self, subject_ids: Iterable[str], include_failed: bool = False
    ) -> Set[DedupKey]:
        ids = list(set(subject_ids))
        if not ids:
            return set()
        statuses = list(ACTIVE_NOTIFICATION_STATUSES)
        if include_failed:
            statuses.append(NotificationStatus.FAILED)
        try:
            rows = self.db.execute(
                select(
                    ScheduledNotification.subject_id,
                    ScheduledNotification.kind,
                    ScheduledNotification.offset_days,
                ).where(
                    and_(
                        ScheduledNotification.subject_id.in_(ids),
                        ScheduledNotification.status.in_(statuses),
                    )
                )
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to read existing dedup keys: {e}")
        return {(r.subject_id, r.kind, r.offset_days) for r in rows}

    def list_started_subjects(self, subject_ids: Iterable[str]) -> Set[str]:
        ids = list(set(subject_ids))
        if not ids:
            return set()
        try:
            rows = self.db.scalars(
                select(ScheduledNotification.subject_id)
                .where(
                    and_(
                        ScheduledNotification.subject_id.in_(ids),
                        ScheduledNotification.status != NotificationStatus.CANCELLED,
                    )
                )
                .distinct()
            ).all()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to read notification history: {e}")
        return set(rows)

    def update_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        error: Optional[str] = None,
    ) -> bool:
        if status == NotificationStatus.PENDING:
            raise ValueError("Notifications cannot be moved back to pending")

        values = {"status": status, "last_error": error}
        if status == NotificationStatus.SENT:
            values["sent_at"] = naive_utc_now()

        try:
            result = self.db.execute(
                update(ScheduledNotification)
                .where(
                    and_(
                        ScheduledNotification.id == notification_id,
                        ScheduledNotification.status == NotificationStatus.PENDING,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to update notification {notification_id}: {e}")
        return result.rowcount == 1

    def get(self, notification_id: str) -> Optional[ScheduledNotification]:
        try:
            # bulk status updates bypass the identity map
            return self.db.get(
                ScheduledNotification, notification_id, populate_existing=True
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to load notification {notification_id}: {e}")

    def record_delivery(
        self,
        notification: ScheduledNotification,
        channel: str,
        provider_message_id: Optional[str] = None,
    ) -> None:
        log = MessageLog(
            tenant_id=notification.tenant_id,
            notification_id=notification.id,
            recipient_ref=notification.recipient_ref,
            template_ref=notification.template_ref,
            channel=channel,
            status=NotificationStatus.SENT.value,
            provider_message_id=provider_message_id,
            sent_at=naive_utc_now(),
        )
        try:
            self.db.add(log)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(
                f"Failed to write message log for {notification.id}: {e}"
            )


class SqlTemplateStore(TemplateStore):
    def __init__(self, db_session: Session):
        self.db = db_session

    def get_template_content(self, template_ref: Optional[str]) -> Optional[str]:
        if not template_ref:
            return None
        try:
            return self.db.scalar(
                select(MessageTemplate.content).where(
                    and_(
                        MessageTemplate.id == template_ref,
                        MessageTemplate.is_active.is_(True),
                    )
                )
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(f"Failed to load template {template_ref}: {e}")


class SqlRecipientStore(RecipientStore):
    """
    Resolves the chat target and per-recipient template variables.

    Reminders read the customer's current contact and the item's current
    amount/product; broadcasts read the group definition.
    """

    def __init__(self, db_session: Session, provider: Optional[str] = None):
        self.db = db_session
        self.provider = provider or settings.MESSAGING_PROVIDER

    def resolve_recipient(
        self, notification: ScheduledNotification
    ) -> Optional[Recipient]:
        try:
            if notification.kind == NotificationKind.BROADCAST:
                return self._resolve_group(notification)
            return self._resolve_customer(notification)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StorageError(
                f"Failed to resolve recipient {notification.recipient_ref}: {e}"
            )

    def _resolve_group(self, notification: ScheduledNotification) -> Optional[Recipient]:
        group = self.db.get(GroupMessageSchedule, notification.recipient_ref)
        if not group or not group.chat_id:
            return None
        return Recipient(
            chat_id=group.chat_id,
            name=group.group_name,
            variables={"group_name": group.group_name or ""},
            image_urls=parse_image_urls(group.image_urls),
            message=group.message,
        )

    def _resolve_customer(
        self, notification: ScheduledNotification
    ) -> Optional[Recipient]:
        customer = self.db.get(Customer, notification.recipient_ref)
        if not customer:
            return None

        chat_id = customer.line_user_id if self.provider == "line" else customer.whatsapp
        if not chat_id:
            return None

        item = self.db.get(CustomerItem, notification.subject_id)
        full_name = customer.full_name or ""
        variables: Dict[str, Optional[str]] = {
            "name": full_name,
            "first_name": full_name.split(" ")[0] if full_name else "",
            "whatsapp": customer.whatsapp or "",
            "email": customer.email or "",
            "payment_link": (
                f"{settings.PORTAL_BASE_URL}/fatura"
                f"?c={customer.id[:8]}&t={notification.tenant_id[:8]}"
            ),
        }
        if item is not None:
            variables["product"] = item.product_name or ""
            variables["amount"] = format_currency(item.price)
            variables["due_date"] = (
                item.due_date.strftime(settings.DATE_FORMAT) if item.due_date else ""
            )
        return Recipient(chat_id=chat_id, name=full_name, variables=variables)


def format_currency(value: Optional[float]) -> str:
    """Format an amount as e.g. 'R$ 1.234,56'."""
    if value is None:
        return ""
    formatted = f"{float(value):,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{settings.CURRENCY_SYMBOL} {formatted}"
