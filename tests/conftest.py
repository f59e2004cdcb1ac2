import json
from datetime import date, datetime, time, timezone
from typing import Dict, Generator, List, Optional, Set, Tuple
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from notification_engine.db.models import (
    Base,
    ChargeStatus,
    Customer,
    CustomerCharge,
    CustomerItem,
    GroupMessageSchedule,
    ItemStatus,
    MessageTemplate,
    NotificationKind,
    NotificationStatus,
    Recurrence,
    ScheduledNotification,
    TenantSetting,
)
from notification_engine.schemas.notification_schemas import (
    NotificationPolicy,
    SendResult,
    Subject,
)
from notification_engine.services.messaging.base import MessagingTransport


# Test database setup
TEST_DATABASE_URL = "sqlite:///:memory:"

TENANT_ID = "tenant-0001-0000-0000-000000000000"


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT; let
    # SQLAlchemy emit BEGIN itself
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session = Session(bind=test_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def mock_celery_task():
    """Mock Celery task for testing retry behavior."""
    mock_task = Mock()
    mock_task.request.retries = 0
    mock_task.max_retries = 3
    mock_task.retry = Mock(side_effect=Exception("Retry called"))
    return mock_task


class RecordingTransport(MessagingTransport):
    """In-memory transport that records every part it is asked to send."""

    name = "fake"

    def __init__(self, fail_on_calls: Optional[Set[int]] = None):
        self.calls: List[Tuple[str, str, str, Optional[str]]] = []
        self.fail_on_calls = fail_on_calls or set()

    async def send_text(self, recipient_ref: str, text: str) -> SendResult:
        return self._record(("text", recipient_ref, text, None))

    async def send_image(
        self, recipient_ref: str, image_ref: str, caption: Optional[str] = None
    ) -> SendResult:
        return self._record(("image", recipient_ref, image_ref, caption))

    def _record(self, call) -> SendResult:
        self.calls.append(call)
        if len(self.calls) in self.fail_on_calls:
            return SendResult(success=False, error="provider unavailable")
        return SendResult(success=True, message_id=f"msg-{len(self.calls)}")


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


# Test data factories
@pytest.fixture
def charge_policy() -> NotificationPolicy:
    """The reference policy: 3 and 1 days before, on the due date, 1/3/7 days after."""
    return NotificationPolicy(
        tenant_id=TENANT_ID,
        enabled=True,
        offsets_before=(3, 1),
        send_on_due_date=True,
        offsets_after=(1, 3, 7),
        send_time_of_day=time(9, 0),
        timezone="UTC",
    )


@pytest.fixture
def subject() -> Subject:
    return Subject(
        id="item-0001",
        tenant_id=TENANT_ID,
        customer_id="customer-0001",
        anchor_date=date(2024, 3, 10),
    )


def add_settings(db_session: Session, tenant_id: str, values: Dict[str, str]) -> None:
    for key, value in values.items():
        db_session.add(TenantSetting(tenant_id=tenant_id, key=key, value=value))
    db_session.commit()


@pytest.fixture
def enabled_tenant(db_session: Session) -> str:
    """A tenant with charge automation on and every key set explicitly."""
    add_settings(
        db_session,
        TENANT_ID,
        {
            "charge_automation_enabled": "true",
            "charge_days_before_due": "[3, 1]",
            "charge_days_after_due": "[1, 3, 7]",
            "charge_send_on_due_date": "true",
            "charge_send_time": "09:00",
            "timezone": "UTC",
            "company_name": "Acme Billing",
        },
    )
    return TENANT_ID


@pytest.fixture
def sample_customer(db_session: Session) -> Customer:
    customer = Customer(
        tenant_id=TENANT_ID,
        full_name="Maria Souza",
        whatsapp="(11) 98765-4321",
        email="maria@example.com",
    )
    db_session.add(customer)
    db_session.commit()
    return customer


def make_item(
    db_session: Session,
    customer: Customer,
    due_date: Optional[date],
    status: ItemStatus = ItemStatus.ACTIVE,
    price: float = 149.9,
) -> CustomerItem:
    item = CustomerItem(
        customer_id=customer.id,
        product_name="Premium plan",
        price=price,
        due_date=due_date,
        status=status,
    )
    db_session.add(item)
    db_session.commit()
    return item


def make_charge(
    db_session: Session, customer: Customer, paid_at: datetime
) -> CustomerCharge:
    charge = CustomerCharge(
        customer_id=customer.id,
        amount=149.9,
        status=ChargeStatus.PAID,
        paid_at=paid_at.replace(tzinfo=None),
    )
    db_session.add(charge)
    db_session.commit()
    return charge


def make_template(db_session: Session, content: str, is_active: bool = True) -> MessageTemplate:
    template = MessageTemplate(
        tenant_id=TENANT_ID, name="Reminder", content=content, is_active=is_active
    )
    db_session.add(template)
    db_session.commit()
    return template


def make_group_schedule(
    db_session: Session,
    scheduled_at: datetime,
    image_urls: Optional[List[str]] = None,
    recurrence: Recurrence = Recurrence.NONE,
    message: str = "{{greeting}}, {{group_name}}! New offers today.",
    timezone_name: Optional[str] = "UTC",
) -> GroupMessageSchedule:
    group = GroupMessageSchedule(
        tenant_id=TENANT_ID,
        group_name="VIP Clients",
        chat_id="120363000000000000@g.us",
        message=message,
        image_urls=json.dumps(image_urls) if image_urls is not None else None,
        scheduled_at=scheduled_at.replace(tzinfo=None),
        timezone=timezone_name,
        recurrence=recurrence,
    )
    db_session.add(group)
    db_session.commit()
    return group


def make_notification(
    db_session: Session,
    subject_id: str,
    recipient_ref: str,
    scheduled_for: datetime,
    kind: NotificationKind = NotificationKind.BEFORE_DUE,
    offset_days: int = -3,
    status: NotificationStatus = NotificationStatus.PENDING,
    recurrence: Recurrence = Recurrence.NONE,
    anchor_date: Optional[date] = None,
    template_ref: Optional[str] = None,
    tenant_id: str = TENANT_ID,
) -> ScheduledNotification:
    row = ScheduledNotification(
        tenant_id=tenant_id,
        subject_id=subject_id,
        recipient_ref=recipient_ref,
        anchor_date=anchor_date or scheduled_for.date(),
        kind=kind,
        offset_days=offset_days,
        scheduled_for=scheduled_for.astimezone(timezone.utc).replace(tzinfo=None),
        timezone="UTC",
        template_ref=template_ref,
        status=status,
        recurrence=recurrence,
    )
    db_session.add(row)
    db_session.commit()
    return row
