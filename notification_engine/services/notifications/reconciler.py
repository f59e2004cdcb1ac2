"""
Queue reconciliation.

There is no push feed for payments or item changes, so the queue is kept
consistent by polling: every run first cancels pending rows that became moot,
then tops the queue up with whatever the current policies say should exist.
Both phases are safe to run concurrently with each other and with the
dispatcher; coordination happens through the partial unique index and
guarded status updates.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from notification_engine.config.settings import settings
from notification_engine.db.models import (
    REMINDER_KINDS,
    NotificationKind,
    NotificationStatus,
    ScheduledNotification,
)
from notification_engine.schemas.notification_schemas import (
    NotificationDraft,
    NotificationPolicy,
    ReconcileResult,
    Subject,
)
from notification_engine.services.notifications.base import (
    NotificationStore,
    SubjectStore,
)
from notification_engine.services.notifications.policy_resolver import (
    CHARGE_NOTIFICATION_CLASS,
    PolicyResolver,
)
from notification_engine.services.notifications.schedule_generator import (
    ScheduleGenerator,
)
from notification_engine.utils.datetime_utils import to_utc, utc_now
from notification_engine.utils.errors import NotificationEngineError, NotFoundError
from notification_engine.utils.logging import get_logger

logger = get_logger()

REASON_SUBJECT_RESOLVED = "Item paid or cancelled - cancelled automatically"
REASON_CUSTOMER_PAID = "Customer paid - cancelled automatically"
REASON_BROADCAST_INACTIVE = "Broadcast deactivated - cancelled automatically"
REASON_REGENERATED = "Regenerated from current policy"


class Reconciler:
    def __init__(
        self,
        policy_resolver: PolicyResolver,
        subject_store: SubjectStore,
        notification_store: NotificationStore,
        generator: Optional[ScheduleGenerator] = None,
        notification_class: str = CHARGE_NOTIFICATION_CLASS,
    ):
        self.policy_resolver = policy_resolver
        self.subject_store = subject_store
        self.notification_store = notification_store
        self.generator = generator or ScheduleGenerator()
        self.notification_class = notification_class

    def reconcile(self, now: Optional[datetime] = None) -> ReconcileResult:
        """Run both phases once; per-tenant and per-row failures are counted, not raised."""
        now = to_utc(now or utc_now())
        result = ReconcileResult()

        try:
            self.cancel_moot(now, result)
        except NotificationEngineError as e:
            logger.error("Cancellation phase failed", error=e.message)
            result.errors += 1
        except Exception as e:
            logger.error("Cancellation phase failed", error=str(e), exc_info=True)
            result.errors += 1

        try:
            tenant_ids = self.policy_resolver.list_enabled_tenants(
                self.notification_class
            )
        except Exception as e:
            logger.error("Failed to list enabled tenants", error=str(e), exc_info=True)
            result.errors += 1
            tenant_ids = []

        for tenant_id in tenant_ids:
            try:
                self._generate_for_tenant(tenant_id, now, result)
            except Exception as e:
                logger.error(
                    "Tenant reconciliation failed",
                    tenant_id=tenant_id,
                    error=str(e),
                    exc_info=True,
                )
                result.errors += 1

        self._generate_broadcasts(None, result)

        logger.info(
            "Reconciliation finished",
            cancelled=result.cancelled,
            generated=result.generated,
            errors=result.errors,
            tenants=len(tenant_ids),
        )
        return result

    def reconcile_tenant(
        self, tenant_id: str, now: Optional[datetime] = None
    ) -> ReconcileResult:
        """Top up a single tenant's queue (reminders and broadcasts)."""
        now = to_utc(now or utc_now())
        result = ReconcileResult()
        self._generate_for_tenant(tenant_id, now, result)
        self._generate_broadcasts(tenant_id, result)
        return result

    def cancel_moot(
        self, now: datetime, result: Optional[ReconcileResult] = None
    ) -> ReconcileResult:
        result = result or ReconcileResult()
        pending = self.notification_store.list_pending()
        if not pending:
            return result

        reasons = self._cancellation_reasons(pending, now)
        for row in pending:
            reason = reasons.get(row.id)
            if reason is None:
                continue
            try:
                if self.notification_store.update_status(
                    row.id, NotificationStatus.CANCELLED, reason
                ):
                    result.cancelled += 1
                    logger.debug(
                        "Cancelled notification",
                        notification_id=row.id,
                        subject_id=row.subject_id,
                        reason=reason,
                    )
            except NotificationEngineError as e:
                logger.error(
                    "Failed to cancel notification",
                    notification_id=row.id,
                    error=e.message,
                )
                result.errors += 1
        return result

    def _cancellation_reasons(
        self, pending: List[ScheduledNotification], now: datetime
    ) -> Dict[str, str]:
        reminders = [row for row in pending if row.kind in REMINDER_KINDS]
        broadcasts = [row for row in pending if row.kind == NotificationKind.BROADCAST]

        resolved_subjects = self.subject_store.get_subject_terminal_statuses(
            row.subject_id for row in reminders
        )
        paid_customers = self._recently_paid(
            {row.recipient_ref for row in reminders}, now
        )
        inactive_broadcasts = self.subject_store.get_inactive_broadcasts(
            row.subject_id for row in broadcasts
        )

        reasons: Dict[str, str] = {}
        for row in reminders:
            if row.subject_id in resolved_subjects:
                reasons[row.id] = REASON_SUBJECT_RESOLVED
            elif row.recipient_ref in paid_customers:
                reasons[row.id] = REASON_CUSTOMER_PAID
        for row in broadcasts:
            if row.subject_id in inactive_broadcasts:
                reasons[row.id] = REASON_BROADCAST_INACTIVE
        return reasons

    def _recently_paid(self, customer_ids: Set[str], now: datetime) -> Set[str]:
        since = now - timedelta(days=settings.PAYMENT_LOOKBACK_DAYS)
        return self.subject_store.get_recently_paid_customers(customer_ids, since)

    def _generate_for_tenant(
        self,
        tenant_id: str,
        now: datetime,
        result: ReconcileResult,
        include_failed: bool = True,
    ) -> None:
        policy = self.policy_resolver.resolve(tenant_id, self.notification_class)
        if not policy.enabled:
            return

        today = now.date()
        subjects = self.subject_store.get_upcoming_subjects(
            tenant_id,
            today - timedelta(days=settings.GENERATION_WINDOW_BACK_DAYS),
            today + timedelta(days=settings.GENERATION_WINDOW_FORWARD_DAYS),
        )
        if not subjects:
            return

        # Rows for these customers would be cancelled again on the next run
        paid_customers = self._recently_paid({s.customer_id for s in subjects}, now)
        subjects = [s for s in subjects if s.customer_id not in paid_customers]

        # failed rows stay failed until an operator requeues or regenerates
        existing = self.notification_store.list_active_dedup_keys(
            (s.id for s in subjects), include_failed=include_failed
        )
        for subject in subjects:
            try:
                drafts = self.generator.generate(
                    subject, subject.anchor_date, policy, existing, now
                )
                result.generated += self._persist(drafts)
            except NotificationEngineError as e:
                logger.error(
                    "Failed to generate notifications for subject",
                    tenant_id=tenant_id,
                    subject_id=subject.id,
                    error=e.message,
                )
                result.errors += 1

    def _generate_broadcasts(
        self, tenant_id: Optional[str], result: ReconcileResult
    ) -> None:
        try:
            definitions = self.subject_store.list_active_broadcasts(tenant_id)
            ids = [d.id for d in definitions]
            existing = self.notification_store.list_active_dedup_keys(ids)
            # later occurrences come from the dispatcher; a failed one waits for requeue
            started = self.notification_store.list_started_subjects(ids)
        except Exception as e:
            logger.error(
                "Failed to load broadcast definitions", error=str(e), exc_info=True
            )
            result.errors += 1
            return

        for definition in definitions:
            if definition.id in started:
                continue
            try:
                drafts = self.generator.generate_broadcast(definition, existing)
                result.generated += self._persist(drafts)
            except NotificationEngineError as e:
                logger.error(
                    "Failed to schedule broadcast",
                    broadcast_id=definition.id,
                    error=e.message,
                )
                result.errors += 1

    def _persist(self, drafts: List[NotificationDraft]) -> int:
        inserted = 0
        for draft in drafts:
            if self.notification_store.insert_if_absent(draft):
                inserted += 1
        return inserted

    def generate_for_item(
        self, item_id: str, now: Optional[datetime] = None
    ) -> ReconcileResult:
        """Generate rows for one item right after it is created or its due date moves."""
        now = to_utc(now or utc_now())
        subject = self.subject_store.get_subject(item_id)
        if subject is None:
            raise NotFoundError(f"Item not found: {item_id}")

        result = ReconcileResult()
        policy = self.policy_resolver.resolve(subject.tenant_id, self.notification_class)
        if not self._is_schedulable(subject, policy):
            return result

        existing = self.notification_store.list_active_dedup_keys(
            [subject.id], include_failed=True
        )
        drafts = self.generator.generate(
            subject, subject.anchor_date, policy, existing, now
        )
        result.generated = self._persist(drafts)
        logger.info(
            "Generated notifications for item",
            item_id=item_id,
            generated=result.generated,
        )
        return result

    @staticmethod
    def _is_schedulable(subject: Subject, policy: NotificationPolicy) -> bool:
        return policy.enabled and subject.status in ("active", "pending")

    def regenerate_tenant(
        self, tenant_id: str, now: Optional[datetime] = None
    ) -> ReconcileResult:
        """
        Cancel every pending reminder of a tenant and rebuild from the current policy.

        Used after a tenant edits offsets or send time, since generation alone
        never touches rows that already exist.
        """
        now = to_utc(now or utc_now())
        result = ReconcileResult()

        for row in self.notification_store.list_pending(tenant_id=tenant_id):
            if row.kind not in REMINDER_KINDS:
                continue
            if self.notification_store.update_status(
                row.id, NotificationStatus.CANCELLED, REASON_REGENERATED
            ):
                result.cancelled += 1

        self._generate_for_tenant(tenant_id, now, result, include_failed=False)
        logger.info(
            "Regenerated tenant queue",
            tenant_id=tenant_id,
            cancelled=result.cancelled,
            generated=result.generated,
        )
        return result
