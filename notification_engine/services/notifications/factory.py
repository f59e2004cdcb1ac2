from typing import Optional

from sqlalchemy.orm import Session

from notification_engine.services.messaging.base import MessagingTransport
from notification_engine.services.messaging.tenant_transports import TenantTransports
from notification_engine.services.notifications.dispatcher import Dispatcher
from notification_engine.services.notifications.policy_resolver import PolicyResolver
from notification_engine.services.notifications.reconciler import Reconciler
from notification_engine.services.notifications.repository import (
    SqlNotificationStore,
    SqlRecipientStore,
    SqlSettingsStore,
    SqlSubjectStore,
    SqlTemplateStore,
)


def create_reconciler(db_session: Session) -> Reconciler:
    """Factory function for a Reconciler backed by the SQL stores"""
    return Reconciler(
        policy_resolver=PolicyResolver(SqlSettingsStore(db_session)),
        subject_store=SqlSubjectStore(db_session),
        notification_store=SqlNotificationStore(db_session),
    )


def create_dispatcher(
    db_session: Session,
    transport: Optional[MessagingTransport] = None,
    provider: Optional[str] = None,
    transports: Optional[TenantTransports] = None,
) -> Dispatcher:
    """
    Factory function for a Dispatcher backed by the SQL stores.

    A fixed transport is shared by every tenant; otherwise each tenant gets
    its own, built from its settings.
    """
    if transports is None:
        if transport is not None:
            transports = TenantTransports.shared(transport)
        else:
            transports = TenantTransports(SqlSettingsStore(db_session), provider)

    return Dispatcher(
        notification_store=SqlNotificationStore(db_session),
        recipient_store=SqlRecipientStore(db_session, provider or transports.provider),
        template_store=SqlTemplateStore(db_session),
        transports=transports,
        policy_resolver=PolicyResolver(SqlSettingsStore(db_session)),
    )
