import json
from datetime import time
from typing import Dict, List, Optional, Tuple

from notification_engine.config.settings import settings
from notification_engine.db.models import NotificationKind
from notification_engine.schemas.notification_schemas import (
    DEFAULT_OFFSETS_AFTER,
    DEFAULT_OFFSETS_BEFORE,
    DEFAULT_SEND_TIME,
    NotificationPolicy,
)
from notification_engine.services.notifications.base import SettingsStore
from notification_engine.utils.datetime_utils import load_zone
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger

logger = get_logger()

CHARGE_NOTIFICATION_CLASS = "charge"

# suffixes appended to the notification class prefix, e.g. charge_days_before_due
ENABLED_KEY = "automation_enabled"
DAYS_BEFORE_KEY = "days_before_due"
DAYS_AFTER_KEY = "days_after_due"
SEND_ON_DUE_KEY = "send_on_due_date"
SEND_TIME_KEY = "send_time"
TEMPLATE_KEYS: Dict[NotificationKind, str] = {
    NotificationKind.BEFORE_DUE: "template_before_due",
    NotificationKind.ON_DUE: "template_on_due_date",
    NotificationKind.AFTER_DUE: "template_after_due",
}
TIMEZONE_KEY = "timezone"
COMPANY_NAME_KEY = "company_name"


def setting_key(notification_class: str, suffix: str) -> str:
    return f"{notification_class}_{suffix}"


def parse_offsets(raw: Optional[str], default: Tuple[int, ...]) -> Tuple[int, ...]:
    """
    Parse a JSON list of day offsets into an ordered, duplicate-free tuple.

    Raises ConfigurationError for anything that is not a list of positive
    integers; the due date itself is controlled by its own flag.
    """
    if raw is None or raw.strip() == "":
        return default
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Offset list is not valid JSON: {raw!r} ({e})")

    if not isinstance(value, list):
        raise ConfigurationError(f"Offset list must be a JSON array: {raw!r}")

    offsets: List[int] = []
    for entry in value:
        # bool is an int subclass; "true" in an offsets list is a typo, not a day
        if isinstance(entry, bool):
            raise ConfigurationError(f"Offset entries must be integers: {raw!r}")
        if isinstance(entry, str) and entry.strip().isdigit():
            entry = int(entry.strip())
        if isinstance(entry, float) and entry.is_integer():
            entry = int(entry)
        if not isinstance(entry, int) or entry < 1:
            raise ConfigurationError(
                f"Offset entries must be positive integers: {raw!r}"
            )
        if entry not in offsets:
            offsets.append(entry)
    return tuple(offsets)


def parse_send_time(raw: Optional[str]) -> time:
    """Parse 'HH:MM' into a time; raises ConfigurationError when malformed."""
    if raw is None or raw.strip() == "":
        return DEFAULT_SEND_TIME
    try:
        hours, minutes = raw.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Send time must be HH:MM: {raw!r} ({e})")


class PolicyResolver:
    """Turns raw tenant key/value settings into a typed NotificationPolicy"""

    def __init__(self, settings_store: SettingsStore):
        self.settings_store = settings_store

    def keys_for(self, notification_class: str) -> List[str]:
        suffixes = [
            ENABLED_KEY,
            DAYS_BEFORE_KEY,
            DAYS_AFTER_KEY,
            SEND_ON_DUE_KEY,
            SEND_TIME_KEY,
            *TEMPLATE_KEYS.values(),
        ]
        return [setting_key(notification_class, s) for s in suffixes] + [
            TIMEZONE_KEY,
            COMPANY_NAME_KEY,
        ]

    def list_enabled_tenants(
        self, notification_class: str = CHARGE_NOTIFICATION_CLASS
    ) -> List[str]:
        return self.settings_store.list_tenants_with_setting(
            setting_key(notification_class, ENABLED_KEY), "true"
        )

    def resolve(
        self, tenant_id: str, notification_class: str = CHARGE_NOTIFICATION_CLASS
    ) -> NotificationPolicy:
        raw = self.settings_store.get_tenant_settings(
            tenant_id, self.keys_for(notification_class)
        )

        def get(suffix: str) -> Optional[str]:
            return raw.get(setting_key(notification_class, suffix))

        enabled = (get(ENABLED_KEY) or "").strip().lower() == "true"

        offsets_before = self._safe_offsets(
            tenant_id, get(DAYS_BEFORE_KEY), DEFAULT_OFFSETS_BEFORE
        )
        offsets_after = self._safe_offsets(
            tenant_id, get(DAYS_AFTER_KEY), DEFAULT_OFFSETS_AFTER
        )

        try:
            send_time = parse_send_time(get(SEND_TIME_KEY))
        except ConfigurationError as e:
            logger.warning(
                "Invalid send time, using default",
                tenant_id=tenant_id,
                error=e.message,
            )
            send_time = DEFAULT_SEND_TIME

        zone = load_zone(raw.get(TIMEZONE_KEY), fallback=settings.DEFAULT_TIMEZONE)

        return NotificationPolicy(
            tenant_id=tenant_id,
            notification_class=notification_class,
            enabled=enabled,
            offsets_before=offsets_before,
            send_on_due_date=(get(SEND_ON_DUE_KEY) or "").strip().lower() == "true",
            offsets_after=offsets_after,
            send_time_of_day=send_time,
            template_refs={
                kind: (get(suffix) or None) for kind, suffix in TEMPLATE_KEYS.items()
            },
            timezone=zone.key,
            company_name=raw.get(COMPANY_NAME_KEY) or None,
        )

    @staticmethod
    def _safe_offsets(
        tenant_id: str, raw: Optional[str], default: Tuple[int, ...]
    ) -> Tuple[int, ...]:
        try:
            return parse_offsets(raw, default)
        except ConfigurationError as e:
            logger.warning(
                "Invalid offset list, using default",
                tenant_id=tenant_id,
                error=e.message,
                default=list(default),
            )
            return default
