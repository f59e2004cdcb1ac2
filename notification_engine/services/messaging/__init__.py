from .base import MessagingTransport
from .line_transport import LineTransport
from .registry import TransportRegistry
from .tenant_transports import TenantTransports
from .waha_transport import WahaTransport, format_chat_id

__all__ = [
    "MessagingTransport",
    "LineTransport",
    "TenantTransports",
    "TransportRegistry",
    "WahaTransport",
    "format_chat_id",
]
