from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set

from notification_engine.db.models import NotificationStatus, ScheduledNotification
from notification_engine.schemas.notification_schemas import (
    BroadcastDefinition,
    DedupKey,
    NotificationDraft,
    Recipient,
    Subject,
)


class SettingsStore(ABC):
    """Read-only access to raw tenant key/value settings"""

    @abstractmethod
    def get_tenant_settings(self, tenant_id: str, keys: List[str]) -> Dict[str, str]:
        pass

    @abstractmethod
    def list_tenants_with_setting(self, key: str, value: str) -> List[str]:
        pass


class SubjectStore(ABC):
    """Billable items, payments and broadcast definitions"""

    @abstractmethod
    def get_upcoming_subjects(
        self, tenant_id: str, from_date: date, to_date: date
    ) -> List[Subject]:
        pass

    @abstractmethod
    def get_subject(self, subject_id: str) -> Optional[Subject]:
        pass

    @abstractmethod
    def get_subject_terminal_statuses(self, subject_ids: Iterable[str]) -> Set[str]:
        """Return the ids among subject_ids whose item is paid or cancelled."""
        pass

    @abstractmethod
    def get_recently_paid_customers(
        self, customer_ids: Iterable[str], since: datetime
    ) -> Set[str]:
        pass

    @abstractmethod
    def list_active_broadcasts(
        self, tenant_id: Optional[str] = None
    ) -> List[BroadcastDefinition]:
        pass

    @abstractmethod
    def get_inactive_broadcasts(self, broadcast_ids: Iterable[str]) -> Set[str]:
        """Return the ids among broadcast_ids that are deactivated or gone."""
        pass


class NotificationStore(ABC):
    """The scheduled_notifications table"""

    @abstractmethod
    def insert_if_absent(self, draft: NotificationDraft) -> bool:
        """Insert a pending row; False when an active row already holds the dedup key."""
        pass

    @abstractmethod
    def list_pending(
        self,
        tenant_id: Optional[str] = None,
        subject_ids: Optional[Iterable[str]] = None,
    ) -> List[ScheduledNotification]:
        pass

    @abstractmethod
    def list_due(self, now: datetime, limit: int) -> List[ScheduledNotification]:
        pass

    @abstractmethod
    def list_active_dedup_keys(
        self, subject_ids: Iterable[str], include_failed: bool = False
    ) -> Set[DedupKey]:
        """Dedup keys held by pending or sent rows, and failed ones when asked."""
        pass

    @abstractmethod
    def list_started_subjects(self, subject_ids: Iterable[str]) -> Set[str]:
        """Return the ids among subject_ids that have any row not cancelled."""
        pass

    @abstractmethod
    def update_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        error: Optional[str] = None,
    ) -> bool:
        """Move a pending row to a terminal status; False if it was no longer pending."""
        pass

    @abstractmethod
    def get(self, notification_id: str) -> Optional[ScheduledNotification]:
        pass

    @abstractmethod
    def record_delivery(
        self,
        notification: ScheduledNotification,
        channel: str,
        provider_message_id: Optional[str] = None,
    ) -> None:
        """Append a message_logs entry for a row that was just sent."""
        pass


class TemplateStore(ABC):
    @abstractmethod
    def get_template_content(self, template_ref: Optional[str]) -> Optional[str]:
        pass


class RecipientStore(ABC):
    @abstractmethod
    def resolve_recipient(
        self, notification: ScheduledNotification
    ) -> Optional[Recipient]:
        """Look up the current contact for a row, or None if it vanished."""
        pass
