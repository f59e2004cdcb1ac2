from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from notification_engine.db.models import (
    NotificationKind,
    NotificationStatus,
    Recurrence,
    ScheduledNotification,
)
from notification_engine.schemas.notification_schemas import (
    BroadcastDefinition,
    NotificationPolicy,
    dedup_keys,
)
from notification_engine.services.notifications.schedule_generator import (
    ScheduleGenerator,
)
from tests.conftest import TENANT_ID

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def generator() -> ScheduleGenerator:
    return ScheduleGenerator()


class TestReminderGeneration:
    """Test reminder rows computed from a due date and a policy."""

    def test_reference_scenario_produces_six_rows(self, generator, subject, charge_policy):
        """Due 2024-03-10, now 2024-03-01: every offset is generated at 09:00."""
        drafts = generator.generate(subject, subject.anchor_date, charge_policy, set(), NOW)

        assert sorted(d.offset_days for d in drafts) == [-3, -1, 0, 1, 3, 7]
        assert sorted(d.scheduled_for for d in drafts) == [
            datetime(2024, 3, 7, 9, 0, tzinfo=ZoneInfo("UTC")),
            datetime(2024, 3, 9, 9, 0, tzinfo=ZoneInfo("UTC")),
            datetime(2024, 3, 10, 9, 0, tzinfo=ZoneInfo("UTC")),
            datetime(2024, 3, 11, 9, 0, tzinfo=ZoneInfo("UTC")),
            datetime(2024, 3, 13, 9, 0, tzinfo=ZoneInfo("UTC")),
            datetime(2024, 3, 17, 9, 0, tzinfo=ZoneInfo("UTC")),
        ]

    def test_kinds_follow_offset_sign(self, generator, subject, charge_policy):
        drafts = generator.generate(subject, subject.anchor_date, charge_policy, set(), NOW)
        kinds = {d.offset_days: d.kind for d in drafts}

        assert kinds[-3] == NotificationKind.BEFORE_DUE
        assert kinds[-1] == NotificationKind.BEFORE_DUE
        assert kinds[0] == NotificationKind.ON_DUE
        assert kinds[7] == NotificationKind.AFTER_DUE

    def test_rows_carry_subject_and_recipient(self, generator, subject, charge_policy):
        drafts = generator.generate(subject, subject.anchor_date, charge_policy, set(), NOW)

        for draft in drafts:
            assert draft.tenant_id == TENANT_ID
            assert draft.subject_id == subject.id
            assert draft.recipient_ref == subject.customer_id
            assert draft.anchor_date == subject.anchor_date
            assert draft.recurrence == Recurrence.NONE

    def test_generation_is_idempotent(self, generator, subject, charge_policy):
        """Feeding the first run's keys back in yields nothing new."""
        first = generator.generate(subject, subject.anchor_date, charge_policy, set(), NOW)
        second = generator.generate(
            subject, subject.anchor_date, charge_policy, dedup_keys(first), NOW
        )

        assert len(first) == 6
        assert second == []

    def test_existing_keys_are_skipped(self, generator, subject, charge_policy):
        existing = {(subject.id, NotificationKind.BEFORE_DUE, -3)}
        drafts = generator.generate(subject, subject.anchor_date, charge_policy, existing, NOW)

        assert -3 not in {d.offset_days for d in drafts}
        assert len(drafts) == 5

    def test_past_after_due_reminders_are_still_generated(
        self, generator, subject, charge_policy
    ):
        """Due 2024-03-10, now 2024-03-12: before/on-due are gone, after-due all remain."""
        now = datetime(2024, 3, 12, 12, 0, tzinfo=timezone.utc)
        drafts = generator.generate(subject, subject.anchor_date, charge_policy, set(), now)

        assert sorted(d.offset_days for d in drafts) == [1, 3, 7]
        overdue = [d for d in drafts if d.offset_days == 1][0]
        assert overdue.scheduled_for < now

    def test_before_due_on_the_send_instant_is_not_generated(
        self, generator, subject, charge_policy
    ):
        """A before-due slot exactly at now is no longer in the future."""
        now = datetime(2024, 3, 7, 9, 0, tzinfo=timezone.utc)
        drafts = generator.generate(subject, subject.anchor_date, charge_policy, set(), now)

        assert -3 not in {d.offset_days for d in drafts}
        assert -1 in {d.offset_days for d in drafts}

    def test_duplicate_offsets_produce_one_row(self, generator, subject):
        policy = NotificationPolicy(
            tenant_id=TENANT_ID,
            enabled=True,
            offsets_before=(1, 1, 1),
            offsets_after=(2, 2),
            timezone="UTC",
        )
        drafts = generator.generate(subject, subject.anchor_date, policy, set(), NOW)

        assert sorted(d.offset_days for d in drafts) == [-1, 2]

    def test_disabled_policy_generates_nothing(self, generator, subject, charge_policy):
        policy = charge_policy.model_copy(update={"enabled": False})
        assert generator.generate(subject, subject.anchor_date, policy, set(), NOW) == []

    def test_missing_anchor_date_generates_nothing(self, generator, subject, charge_policy):
        assert generator.generate(subject, None, charge_policy, set(), NOW) == []

    def test_on_due_row_only_when_enabled(self, generator, subject, charge_policy):
        policy = charge_policy.model_copy(update={"send_on_due_date": False})
        drafts = generator.generate(subject, subject.anchor_date, policy, set(), NOW)

        assert NotificationKind.ON_DUE not in {d.kind for d in drafts}
        assert len(drafts) == 5

    def test_send_time_is_wall_clock_in_policy_timezone(self, generator, subject, charge_policy):
        policy = charge_policy.model_copy(
            update={"timezone": "America/Sao_Paulo", "send_time_of_day": time(8, 30)}
        )
        drafts = generator.generate(subject, subject.anchor_date, policy, set(), NOW)
        on_due = [d for d in drafts if d.kind == NotificationKind.ON_DUE][0]

        # Sao Paulo is UTC-3
        assert on_due.scheduled_for.astimezone(timezone.utc) == datetime(
            2024, 3, 10, 11, 30, tzinfo=timezone.utc
        )
        assert on_due.timezone == "America/Sao_Paulo"

    def test_template_refs_follow_kind(self, generator, subject, charge_policy):
        policy = charge_policy.model_copy(
            update={
                "template_refs": {
                    NotificationKind.BEFORE_DUE: "tpl-before",
                    NotificationKind.AFTER_DUE: "tpl-after",
                }
            }
        )
        drafts = generator.generate(subject, subject.anchor_date, policy, set(), NOW)
        refs = {d.kind: d.template_ref for d in drafts}

        assert refs[NotificationKind.BEFORE_DUE] == "tpl-before"
        assert refs[NotificationKind.ON_DUE] is None
        assert refs[NotificationKind.AFTER_DUE] == "tpl-after"


class TestBroadcastGeneration:
    """Test the first occurrence of a group broadcast."""

    def _definition(self, **overrides) -> BroadcastDefinition:
        values = dict(
            id="broadcast-0001",
            tenant_id=TENANT_ID,
            scheduled_at=datetime(2024, 1, 1, 12, 0),
            timezone="America/Sao_Paulo",
            recurrence=Recurrence.WEEKLY,
        )
        values.update(overrides)
        return BroadcastDefinition(**values)

    def test_first_occurrence(self, generator):
        drafts = generator.generate_broadcast(self._definition())

        assert len(drafts) == 1
        draft = drafts[0]
        assert draft.kind == NotificationKind.BROADCAST
        assert draft.offset_days == 0
        assert draft.subject_id == draft.recipient_ref == "broadcast-0001"
        assert draft.recurrence == Recurrence.WEEKLY
        # 12:00 UTC is 09:00 in Sao Paulo
        assert draft.scheduled_for.hour == 9
        assert draft.anchor_date == date(2024, 1, 1)

    def test_existing_first_occurrence_is_skipped(self, generator):
        existing = {("broadcast-0001", NotificationKind.BROADCAST, 0)}
        assert generator.generate_broadcast(self._definition(), existing) == []

    def test_inactive_definition_is_skipped(self, generator):
        assert generator.generate_broadcast(self._definition(is_active=False)) == []


class TestNextOccurrence:
    """Test recurrence stepping for sent recurring rows."""

    def _row(self, scheduled_for: datetime, recurrence: Recurrence, tz: str = "UTC"):
        return ScheduledNotification(
            id="row-1",
            tenant_id=TENANT_ID,
            subject_id="broadcast-0001",
            recipient_ref="broadcast-0001",
            anchor_date=scheduled_for.astimezone(ZoneInfo(tz)).date(),
            kind=NotificationKind.BROADCAST,
            offset_days=0,
            scheduled_for=scheduled_for.astimezone(timezone.utc).replace(tzinfo=None),
            timezone=tz,
            status=NotificationStatus.SENT,
            recurrence=recurrence,
        )

    def test_weekly_advances_seven_days(self, generator):
        row = self._row(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc), Recurrence.WEEKLY)
        draft = generator.next_occurrence(row)

        assert draft.scheduled_for == datetime(2024, 1, 8, 9, 0, tzinfo=ZoneInfo("UTC"))
        assert draft.anchor_date == date(2024, 1, 8)
        assert draft.offset_days == 7
        assert draft.recurrence == Recurrence.WEEKLY

    def test_daily_advances_one_day(self, generator):
        row = self._row(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc), Recurrence.DAILY)
        draft = generator.next_occurrence(row)

        assert draft.scheduled_for.date() == date(2024, 1, 2)
        assert draft.offset_days == 1

    def test_monthly_clamps_to_month_end(self, generator):
        row = self._row(datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc), Recurrence.MONTHLY)
        draft = generator.next_occurrence(row)

        assert draft.scheduled_for == datetime(2024, 2, 29, 9, 0, tzinfo=ZoneInfo("UTC"))
        assert draft.offset_days == 29

    def test_wall_clock_time_survives_dst_change(self, generator):
        """09:00 in New York stays 09:00 when clocks move forward on 2024-03-10."""
        new_york = ZoneInfo("America/New_York")
        row = self._row(
            datetime(2024, 3, 7, 9, 0, tzinfo=new_york), Recurrence.WEEKLY, "America/New_York"
        )
        draft = generator.next_occurrence(row)

        assert draft.scheduled_for.astimezone(new_york).hour == 9
        assert draft.scheduled_for.astimezone(timezone.utc).hour == 13

    def test_non_recurring_row_has_no_next(self, generator):
        row = self._row(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc), Recurrence.NONE)
        assert generator.next_occurrence(row) is None
