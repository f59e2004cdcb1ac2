"""
Schedule generation: which notification rows should exist for a subject.

Everything here is pure. Callers pass the dedup keys already stored and
persist whatever comes back through NotificationStore.insert_if_absent.
"""

from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

from dateutil.relativedelta import relativedelta

from notification_engine.db.models import (
    NotificationKind,
    Recurrence,
    ScheduledNotification,
)
from notification_engine.schemas.notification_schemas import (
    BroadcastDefinition,
    DedupKey,
    NotificationDraft,
    NotificationPolicy,
    Subject,
)
from notification_engine.utils.datetime_utils import (
    at_time_of_day,
    from_naive_utc,
    load_zone,
    to_utc,
    utc_now,
)

RECURRENCE_STEPS: Dict[Recurrence, relativedelta] = {
    Recurrence.DAILY: relativedelta(days=1),
    Recurrence.WEEKLY: relativedelta(days=7),
    Recurrence.MONTHLY: relativedelta(months=1),
}


class ScheduleGenerator:
    def generate(
        self,
        subject: Subject,
        anchor_date: Optional[date],
        policy: NotificationPolicy,
        existing_dedup_keys: Iterable[DedupKey] = (),
        now: Optional[datetime] = None,
    ) -> List[NotificationDraft]:
        """
        Compute the reminder rows a subject should have and does not have yet.

        Before-due and on-due rows are only produced for future send times.
        After-due rows are produced even when their send time has already
        passed, so an item that became overdue between runs still gets its
        "N days overdue" reminder; the dispatcher sends any due pending row.
        """
        if not policy.enabled or anchor_date is None:
            return []

        now = to_utc(now or utc_now())
        existing: FrozenSet[DedupKey] = frozenset(existing_dedup_keys)
        zone = load_zone(policy.timezone)

        slots = [
            (NotificationKind.BEFORE_DUE, -days, True)
            for days in sorted(set(policy.offsets_before), reverse=True)
        ]
        if policy.send_on_due_date:
            slots.append((NotificationKind.ON_DUE, 0, True))
        slots.extend(
            (NotificationKind.AFTER_DUE, days, False)
            for days in sorted(set(policy.offsets_after))
        )

        drafts: Dict[DedupKey, NotificationDraft] = {}
        for kind, offset_days, future_only in slots:
            key = (subject.id, kind, offset_days)
            if key in existing or key in drafts:
                continue

            scheduled_for = at_time_of_day(
                anchor_date + timedelta(days=offset_days),
                policy.send_time_of_day,
                zone,
            )
            if future_only and scheduled_for <= now:
                continue

            drafts[key] = NotificationDraft(
                tenant_id=subject.tenant_id,
                subject_id=subject.id,
                recipient_ref=subject.customer_id,
                anchor_date=anchor_date,
                kind=kind,
                offset_days=offset_days,
                scheduled_for=scheduled_for,
                timezone=zone.key,
                template_ref=policy.template_for(kind),
                recurrence=Recurrence.NONE,
            )

        return list(drafts.values())

    def generate_broadcast(
        self,
        definition: BroadcastDefinition,
        existing_dedup_keys: Iterable[DedupKey] = (),
    ) -> List[NotificationDraft]:
        """First occurrence of a broadcast; later ones come from next_occurrence."""
        if not definition.is_active:
            return []

        key = (definition.id, NotificationKind.BROADCAST, 0)
        if key in frozenset(existing_dedup_keys):
            return []

        zone = load_zone(definition.timezone)
        scheduled_for = from_naive_utc(definition.scheduled_at, zone)
        return [
            NotificationDraft(
                tenant_id=definition.tenant_id,
                subject_id=definition.id,
                recipient_ref=definition.id,
                anchor_date=scheduled_for.date(),
                kind=NotificationKind.BROADCAST,
                offset_days=0,
                scheduled_for=scheduled_for,
                timezone=zone.key,
                template_ref=None,
                recurrence=definition.recurrence,
            )
        ]

    def next_occurrence(
        self, notification: ScheduledNotification
    ) -> Optional[NotificationDraft]:
        """
        The row that follows a successfully sent recurring notification.

        The step is applied to the wall-clock send time in the row's zone, and
        offset_days advances by the same number of days so every occurrence
        has its own dedup key.
        """
        step = RECURRENCE_STEPS.get(notification.recurrence)
        if step is None:
            return None

        zone = load_zone(notification.timezone)
        current = from_naive_utc(notification.scheduled_for, zone)
        next_scheduled = current + step
        next_anchor = notification.anchor_date + step
        advanced_days = (next_anchor - notification.anchor_date).days

        return NotificationDraft(
            tenant_id=notification.tenant_id,
            subject_id=notification.subject_id,
            recipient_ref=notification.recipient_ref,
            anchor_date=next_anchor,
            kind=notification.kind,
            offset_days=notification.offset_days + advanced_days,
            scheduled_for=next_scheduled,
            timezone=zone.key,
            template_ref=notification.template_ref,
            recurrence=notification.recurrence,
        )
