import enum
import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


# Enums
class NotificationStatus(enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_NOTIFICATION_STATUSES = (NotificationStatus.PENDING, NotificationStatus.SENT)
TERMINAL_NOTIFICATION_STATUSES = (
    NotificationStatus.SENT,
    NotificationStatus.CANCELLED,
    NotificationStatus.FAILED,
)


class NotificationKind(enum.Enum):
    BEFORE_DUE = "before_due"
    ON_DUE = "on_due"
    AFTER_DUE = "after_due"
    BROADCAST = "broadcast"


REMINDER_KINDS = (
    NotificationKind.BEFORE_DUE,
    NotificationKind.ON_DUE,
    NotificationKind.AFTER_DUE,
)


class Recurrence(enum.Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ItemStatus(enum.Enum):
    ACTIVE = "active"
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


TERMINAL_ITEM_STATUSES = (ItemStatus.PAID, ItemStatus.CANCELLED)


class CustomerStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ChargeStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.current_timestamp(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp(),
    )


# Tenant configuration (raw key/value rows, parsed by the policy resolver)
class TenantSetting(Base, AuditMixin):
    __tablename__ = "tenant_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("tenant_id", "key", name="uq_tenant_settings_tenant_key"),
        Index("idx_tenant_settings_key_value", "key"),
    )


class Customer(Base, AuditMixin):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    whatsapp: Mapped[Optional[str]] = mapped_column(String(40))
    email: Mapped[Optional[str]] = mapped_column(String(320))
    line_user_id: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[CustomerStatus] = mapped_column(
        Enum(CustomerStatus), default=CustomerStatus.ACTIVE, nullable=False
    )

    # Relationships
    items: Mapped[List["CustomerItem"]] = relationship(back_populates="customer")
    charges: Mapped[List["CustomerCharge"]] = relationship(back_populates="customer")

    __table_args__ = (Index("idx_customers_tenant_status", "tenant_id", "status"),)


class CustomerItem(Base, AuditMixin):
    """A billable item; its due date anchors payment reminders."""

    __tablename__ = "customer_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    product_name: Mapped[str] = mapped_column(String(200), nullable=False)
    price: Mapped[Optional[float]] = mapped_column(Numeric(12, 2, asdecimal=False))
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[ItemStatus] = mapped_column(
        Enum(ItemStatus), default=ItemStatus.ACTIVE, nullable=False
    )

    # Relationships
    customer: Mapped["Customer"] = relationship(back_populates="items")

    __table_args__ = (
        Index("idx_customer_items_due_date", "due_date"),
        Index("idx_customer_items_status", "status"),
    )


class CustomerCharge(Base, AuditMixin):
    """Payment records written by the gateway webhooks."""

    __tablename__ = "customer_charges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("customers.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Optional[float]] = mapped_column(Numeric(12, 2, asdecimal=False))
    status: Mapped[ChargeStatus] = mapped_column(
        Enum(ChargeStatus), default=ChargeStatus.PENDING, nullable=False
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    customer: Mapped["Customer"] = relationship(back_populates="charges")

    __table_args__ = (
        Index("idx_customer_charges_customer_paid", "customer_id", "status", "paid_at"),
    )


class MessageTemplate(Base, AuditMixin):
    __tablename__ = "message_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class GroupMessageSchedule(Base, AuditMixin):
    """A broadcast definition: a message (and optional images) posted to a chat group."""

    __tablename__ = "group_message_schedules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    group_name: Mapped[Optional[str]] = mapped_column(String(200))
    chat_id: Mapped[Optional[str]] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # JSON array of image URLs stored as Text - serialize/deserialize in application
    image_urls: Mapped[Optional[str]] = mapped_column(Text)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    recurrence: Mapped[Recurrence] = mapped_column(
        Enum(Recurrence), default=Recurrence.NONE, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("idx_group_msg_sched_tenant_active", "tenant_id", "is_active"),)


class ScheduledNotification(Base, AuditMixin):
    """
    One reminder or broadcast occurrence.

    Status moves only pending -> sent | cancelled | failed. Recurrence and
    operator requeue insert new rows instead of touching terminal ones.
    """

    __tablename__ = "scheduled_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # customer id for reminders, broadcast definition id for broadcasts
    recipient_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[NotificationKind] = mapped_column(Enum(NotificationKind), nullable=False)
    offset_days: Mapped[int] = mapped_column(Integer, nullable=False)
    # naive UTC
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    template_ref: Mapped[Optional[str]] = mapped_column(String(36))
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False
    )
    recurrence: Mapped[Recurrence] = mapped_column(
        Enum(Recurrence), default=Recurrence.NONE, nullable=False
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        # At most one active (pending/sent) row per dedup key; cancelled and
        # failed rows do not block regeneration.
        Index(
            "uq_sched_notif_active_dedup",
            "subject_id",
            "kind",
            "offset_days",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'SENT')"),
            sqlite_where=text("status IN ('PENDING', 'SENT')"),
        ),
        Index("idx_sched_notif_status_scheduled_for", "status", "scheduled_for"),
        Index("idx_sched_notif_tenant", "tenant_id"),
        Index("idx_sched_notif_subject", "subject_id"),
    )

    @property
    def dedup_key(self):
        return (self.subject_id, self.kind, self.offset_days)


class MessageLog(Base, AuditMixin):
    """Audit trail of delivered messages, one row per sent notification."""

    __tablename__ = "message_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notification_id: Mapped[Optional[str]] = mapped_column(String(36))
    # customer id for reminders, broadcast definition id for broadcasts
    recipient_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    template_ref: Mapped[Optional[str]] = mapped_column(String(36))
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="sent")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(200))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("idx_message_logs_tenant_sent_at", "tenant_id", "sent_at"),)
