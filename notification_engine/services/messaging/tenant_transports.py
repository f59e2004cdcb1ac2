from typing import TYPE_CHECKING, Dict, Optional

from notification_engine.config.settings import settings
from notification_engine.services.messaging.base import MessagingTransport
from notification_engine.services.messaging.registry import TransportRegistry
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger

if TYPE_CHECKING:
    from notification_engine.services.notifications.base import SettingsStore

logger = get_logger()

# tenant_settings keys holding per-tenant credentials, mapped to transport options
TENANT_CREDENTIAL_KEYS: Dict[str, Dict[str, str]] = {
    "waha": {
        "waha_api_url": "api_url",
        "waha_api_key": "api_key",
        "waha_session": "session",
    },
    "line": {"line_channel_access_token": "access_token"},
}


class TenantTransports:
    """
    One messaging transport per tenant, cached for a single dispatch run.

    Credentials come from the tenant's settings; any value a tenant leaves
    unset falls back to the environment. A tenant without usable credentials
    gets a ConfigurationError, which is cached too so the lookup runs once.
    """

    def __init__(
        self,
        settings_store: Optional["SettingsStore"] = None,
        provider: Optional[str] = None,
        transport: Optional[MessagingTransport] = None,
    ):
        self.settings_store = settings_store
        default = transport.name if transport is not None else settings.MESSAGING_PROVIDER
        self.provider = (provider or default).strip().lower()
        self._shared = transport
        self._transports: Dict[str, MessagingTransport] = {}
        self._errors: Dict[str, ConfigurationError] = {}

    @classmethod
    def shared(cls, transport: MessagingTransport) -> "TenantTransports":
        """Hand the same transport to every tenant; the caller keeps ownership."""
        return cls(transport=transport)

    def for_tenant(self, tenant_id: str) -> MessagingTransport:
        if self._shared is not None:
            return self._shared
        if tenant_id in self._transports:
            return self._transports[tenant_id]
        if tenant_id in self._errors:
            raise self._errors[tenant_id]

        try:
            transport = TransportRegistry.create_transport(
                self.provider, **self._credentials(tenant_id)
            )
        except ConfigurationError as e:
            error = ConfigurationError(
                f"Messaging provider {self.provider} is not configured for tenant "
                f"{tenant_id}: {e.message}"
            )
            logger.warning(
                "Tenant has no messaging credentials",
                tenant_id=tenant_id,
                provider=self.provider,
                error=e.message,
            )
            self._errors[tenant_id] = error
            raise error

        self._transports[tenant_id] = transport
        return transport

    def _credentials(self, tenant_id: str) -> Dict[str, str]:
        keys = TENANT_CREDENTIAL_KEYS.get(self.provider)
        if not keys or self.settings_store is None:
            return {}

        raw = self.settings_store.get_tenant_settings(tenant_id, list(keys))
        options = {}
        for key, option in keys.items():
            value = (raw.get(key) or "").strip()
            if value:
                options[option] = value
        return options

    async def aclose(self) -> None:
        for transport in self._transports.values():
            await transport.aclose()
        self._transports.clear()
        self._errors.clear()

    async def __aenter__(self) -> "TenantTransports":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
