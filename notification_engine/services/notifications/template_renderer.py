import re
from datetime import date, datetime
from typing import Dict, Mapping, Optional
from zoneinfo import ZoneInfo

from notification_engine.config.settings import settings
from notification_engine.db.models import NotificationKind
from notification_engine.services.notifications.base import TemplateStore
from notification_engine.utils.logging import get_logger

logger = get_logger()

# {{ name }} or {name}
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")

KNOWN_VARIABLES = frozenset(
    {
        "name",
        "first_name",
        "amount",
        "due_date",
        "days_overdue",
        "days_until_due",
        "product",
        "whatsapp",
        "email",
        "company",
        "payment_link",
        "greeting",
        "group_name",
        "current_date",
        "current_time",
        "portal_link",
    }
)

# Placeholder names used by templates written for the Portuguese UI
VARIABLE_ALIASES: Dict[str, str] = {
    "nome": "name",
    "primeiro_nome": "first_name",
    "valor": "amount",
    "vencimento": "due_date",
    "produto": "product",
    "empresa": "company",
    "link_pagamento": "payment_link",
    "periodo_dia": "greeting",
    "nome_grupo": "group_name",
    "data_atual": "current_date",
    "hora_atual": "current_time",
    "link_portal": "portal_link",
    "dias_atraso": "days_overdue",
    "dias_para_vencer": "days_until_due",
}

DEFAULT_TEMPLATES: Dict[NotificationKind, str] = {
    NotificationKind.BEFORE_DUE: (
        "Hello {{name}}! 👋\n\n"
        "This is a reminder that your invoice is due in {days} day(s).\n\n"
        "Amount: {{amount}}\nDue date: {{due_date}}\n\n"
        "If you have any questions, we are here to help!"
    ),
    NotificationKind.ON_DUE: (
        "Hello {{name}}! 👋\n\n"
        "Your invoice is due today!\n\n"
        "Amount: {{amount}}\nDue date: {{due_date}}\n\n"
        "If you have any questions, we are here to help!"
    ),
    NotificationKind.AFTER_DUE: (
        "Hello {{name}}! 👋\n\n"
        "Your invoice has been overdue for {days} day(s).\n\n"
        "Amount: {{amount}}\nDue date: {{due_date}}\n\n"
        "Please settle it at your earliest convenience."
    ),
    NotificationKind.BROADCAST: "{{greeting}}, {{group_name}}!",
}


def render(template: str, variables: Mapping[str, Optional[str]]) -> str:
    """
    Substitute {{var}} and {var} placeholders.

    Known variables render their value, or an empty string when the value is
    missing. Placeholders that name no known variable are left untouched so
    a typo in a tenant template stays visible instead of silently vanishing.
    """

    def substitute(match: "re.Match[str]") -> str:
        raw_name = match.group(1) or match.group(2)
        name = VARIABLE_ALIASES.get(raw_name, raw_name)
        if name not in KNOWN_VARIABLES and name not in variables:
            return match.group(0)
        value = variables.get(name)
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


def greeting_for_hour(hour: int) -> str:
    if 5 <= hour < 12:
        return "Good morning"
    if 12 <= hour < 18:
        return "Good afternoon"
    return "Good evening"


def build_variables(
    base: Mapping[str, Optional[str]],
    anchor_date: Optional[date],
    now: datetime,
    zone: ZoneInfo,
    company_name: Optional[str] = None,
) -> Dict[str, str]:
    """Merge recipient variables with the ones derived from the clock and due date."""
    local_now = now.astimezone(zone)
    today = local_now.date()

    variables: Dict[str, str] = {
        "greeting": greeting_for_hour(local_now.hour),
        "current_date": today.strftime(settings.DATE_FORMAT),
        "current_time": local_now.strftime("%H:%M"),
        "company": company_name or "",
        "portal_link": settings.PORTAL_BASE_URL,
        "days_overdue": "",
        "days_until_due": "",
    }
    if anchor_date is not None:
        variables["days_overdue"] = str(max(0, (today - anchor_date).days))
        variables["days_until_due"] = str(max(0, (anchor_date - today).days))

    variables.update({k: ("" if v is None else str(v)) for k, v in base.items()})
    return variables


class TemplateRenderer:
    """Loads stored templates and falls back to the built-in text per kind"""

    def __init__(self, template_store: TemplateStore):
        self.template_store = template_store

    def resolve_template(
        self,
        template_ref: Optional[str],
        kind: NotificationKind,
        offset_days: int = 0,
    ) -> str:
        content = self.template_store.get_template_content(template_ref)
        if content:
            return content

        if template_ref:
            logger.warning(
                "Template not found or inactive, using default",
                template_ref=template_ref,
                kind=kind.value,
            )
        return default_template(kind, offset_days)

    def render(
        self,
        template_ref: Optional[str],
        kind: NotificationKind,
        offset_days: int,
        variables: Mapping[str, Optional[str]],
    ) -> str:
        return render(self.resolve_template(template_ref, kind, offset_days), variables)


def default_template(kind: NotificationKind, offset_days: int = 0) -> str:
    return DEFAULT_TEMPLATES[kind].replace("{days}", str(abs(offset_days)))
