from abc import ABC, abstractmethod
from typing import Optional

from notification_engine.schemas.notification_schemas import SendResult


class MessagingTransport(ABC):
    """
    A channel that can deliver text and images to a chat identifier.

    Implementations report delivery problems through SendResult rather than
    raising, so the dispatcher can record the error on the row.
    """

    name: str = "base"

    @abstractmethod
    async def send_text(self, recipient_ref: str, text: str) -> SendResult:
        pass

    @abstractmethod
    async def send_image(
        self, recipient_ref: str, image_ref: str, caption: Optional[str] = None
    ) -> SendResult:
        pass

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "MessagingTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
