from datetime import time

import pytest

from notification_engine.config.settings import settings
from notification_engine.db.models import NotificationKind
from notification_engine.services.notifications.policy_resolver import (
    PolicyResolver,
    parse_offsets,
    parse_send_time,
)
from notification_engine.services.notifications.repository import SqlSettingsStore
from notification_engine.utils.errors import ConfigurationError
from tests.conftest import TENANT_ID, add_settings


@pytest.fixture
def resolver(db_session) -> PolicyResolver:
    return PolicyResolver(SqlSettingsStore(db_session))


class TestParseOffsets:
    """Test parsing of JSON offset lists."""

    def test_parses_ordered_unique_list(self):
        assert parse_offsets("[7, 3, 3, 1]", (1,)) == (7, 3, 1)

    def test_empty_value_uses_default(self):
        assert parse_offsets(None, (3, 1)) == (3, 1)
        assert parse_offsets("  ", (3, 1)) == (3, 1)

    def test_digit_strings_are_accepted(self):
        assert parse_offsets('["2", 5]', ()) == (2, 5)

    @pytest.mark.parametrize(
        "raw", ["not json", '{"days": 3}', "[-1, 2]", "[0, 2]", "[1.5]", '["x"]', "[true]"]
    )
    def test_malformed_lists_raise(self, raw):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_offsets(raw, (3, 1))
        assert exc_info.value.error_code == "CONFIG_ERROR"


class TestParseSendTime:
    def test_parses_hours_and_minutes(self):
        assert parse_send_time("08:45") == time(8, 45)

    def test_accepts_seconds_suffix(self):
        assert parse_send_time("10:15:00") == time(10, 15)

    @pytest.mark.parametrize("raw", ["9am", "25:00", "12"])
    def test_malformed_time_raises(self, raw):
        with pytest.raises(ConfigurationError):
            parse_send_time(raw)


class TestResolve:
    """Test turning tenant settings rows into a NotificationPolicy."""

    def test_defaults_when_nothing_is_configured(self, resolver):
        policy = resolver.resolve(TENANT_ID)

        assert policy.enabled is False
        assert policy.offsets_before == (3, 1)
        assert policy.offsets_after == (1, 3, 7)
        assert policy.send_on_due_date is False
        assert policy.send_time_of_day == time(9, 0)
        assert policy.timezone == settings.DEFAULT_TIMEZONE
        assert policy.template_for(NotificationKind.BEFORE_DUE) is None

    def test_reads_every_key(self, db_session, resolver):
        add_settings(
            db_session,
            TENANT_ID,
            {
                "charge_automation_enabled": "true",
                "charge_days_before_due": "[5, 2]",
                "charge_days_after_due": "[2]",
                "charge_send_on_due_date": "true",
                "charge_send_time": "10:30",
                "charge_template_before_due": "tpl-before",
                "charge_template_on_due_date": "tpl-on",
                "charge_template_after_due": "tpl-after",
                "timezone": "Europe/Lisbon",
                "company_name": "Acme Billing",
            },
        )
        policy = resolver.resolve(TENANT_ID)

        assert policy.enabled is True
        assert policy.offsets_before == (5, 2)
        assert policy.offsets_after == (2,)
        assert policy.send_on_due_date is True
        assert policy.send_time_of_day == time(10, 30)
        assert policy.template_for(NotificationKind.BEFORE_DUE) == "tpl-before"
        assert policy.template_for(NotificationKind.ON_DUE) == "tpl-on"
        assert policy.template_for(NotificationKind.AFTER_DUE) == "tpl-after"
        assert policy.timezone == "Europe/Lisbon"
        assert policy.company_name == "Acme Billing"

    def test_malformed_values_fall_back_to_defaults(self, db_session, resolver):
        add_settings(
            db_session,
            TENANT_ID,
            {
                "charge_automation_enabled": "true",
                "charge_days_before_due": "[3, -1]",
                "charge_days_after_due": "oops",
                "charge_send_time": "noon",
                "timezone": "Mars/Olympus_Mons",
            },
        )
        policy = resolver.resolve(TENANT_ID)

        assert policy.enabled is True
        assert policy.offsets_before == (3, 1)
        assert policy.offsets_after == (1, 3, 7)
        assert policy.send_time_of_day == time(9, 0)
        assert policy.timezone == settings.DEFAULT_TIMEZONE

    def test_enabled_requires_literal_true(self, db_session, resolver):
        add_settings(db_session, TENANT_ID, {"charge_automation_enabled": "yes"})
        assert resolver.resolve(TENANT_ID).enabled is False

    def test_other_tenants_settings_are_ignored(self, db_session, resolver):
        add_settings(db_session, "other-tenant", {"charge_automation_enabled": "true"})
        assert resolver.resolve(TENANT_ID).enabled is False

    def test_list_enabled_tenants(self, db_session, resolver):
        add_settings(db_session, TENANT_ID, {"charge_automation_enabled": "true"})
        add_settings(db_session, "tenant-off", {"charge_automation_enabled": "false"})

        assert resolver.list_enabled_tenants() == [TENANT_ID]
