from typing import Any, Callable, Dict, Optional

from notification_engine.config.settings import settings
from notification_engine.services.messaging.base import MessagingTransport
from notification_engine.services.messaging.line_transport import LineTransport
from notification_engine.services.messaging.waha_transport import WahaTransport
from notification_engine.utils.errors import ConfigurationError
from notification_engine.utils.logging import get_logger

logger = get_logger()


class TransportRegistry:
    """Registry for messaging transport creation"""

    # Map provider names to factory functions
    _factories: Dict[str, Callable[..., MessagingTransport]] = {
        "waha": WahaTransport,
        "line": LineTransport,
    }

    @classmethod
    def create_transport(
        cls, provider: Optional[str] = None, **options: Any
    ) -> MessagingTransport:
        """
        Create the transport for a provider name (defaults to MESSAGING_PROVIDER).

        Options are passed to the transport; anything omitted falls back to the
        environment settings.
        """
        name = (provider or settings.MESSAGING_PROVIDER).strip().lower()
        factory = cls._factories.get(name)
        if not factory:
            raise ConfigurationError(f"No messaging transport registered for: {name}")
        return factory(**options)

    @classmethod
    def register_transport(
        cls, provider: str, factory: Callable[..., MessagingTransport]
    ) -> None:
        cls._factories[provider.strip().lower()] = factory
        logger.info("Registered messaging transport", provider=provider)

    @classmethod
    def list_registered_providers(cls) -> list:
        return list(cls._factories.keys())
