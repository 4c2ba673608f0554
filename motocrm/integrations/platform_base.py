"""
Abstract chat-platform interface - every outbound platform integration implements this.
The event processor, sync queue and bulk sync only ever talk to this interface.
"""
from abc import ABC, abstractmethod
from typing import Optional


class PlatformError(Exception):
    """A chat-platform API call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class SubscriberNotFoundError(PlatformError):
    """The platform has no subscriber for the given id or phone."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404, transient=False)


class SyncPushError(Exception):
    """A sync record cannot be pushed (missing lead, no subscriber id, bad payload)."""
    pass


class ChatPlatformClient(ABC):
    """Abstract base class for chat-platform integrations."""

    name: str = "platform"

    @abstractmethod
    async def get_subscriber(self, subscriber_id: str) -> Optional[dict]:
        """
        Fetch a subscriber by platform id.
        Returns: raw subscriber dict, or None when it does not exist.
        Raises PlatformError on transport/API failure.
        """
        ...

    @abstractmethod
    async def find_subscriber_by_phone(self, phone: str) -> Optional[dict]:
        """
        Look a subscriber up by phone number.
        Returns: raw subscriber dict, or None when there is no match.
        """
        ...

    @abstractmethod
    async def add_tag(self, subscriber_id: str, tag: str) -> None:
        ...

    @abstractmethod
    async def remove_tag(self, subscriber_id: str, tag: str) -> None:
        ...

    @abstractmethod
    async def set_custom_field(self, subscriber_id: str, field_name: str, value) -> None:
        ...

    @abstractmethod
    async def update_subscriber(self, subscriber_id: str, fields: dict) -> None:
        """Update system fields (first_name, last_name, phone, email)."""
        ...

    @abstractmethod
    async def send_text(self, subscriber_id: str, text: str) -> None:
        ...
