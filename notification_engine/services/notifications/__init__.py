from .base import (
    NotificationStore,
    RecipientStore,
    SettingsStore,
    SubjectStore,
    TemplateStore,
)
from .dispatcher import Dispatcher
from .policy_resolver import PolicyResolver
from .reconciler import Reconciler
from .schedule_generator import ScheduleGenerator
from .template_renderer import TemplateRenderer, render

__all__ = [
    "NotificationStore",
    "RecipientStore",
    "SettingsStore",
    "SubjectStore",
    "TemplateStore",
    "Dispatcher",
    "PolicyResolver",
    "Reconciler",
    "ScheduleGenerator",
    "TemplateRenderer",
    "render",
]
