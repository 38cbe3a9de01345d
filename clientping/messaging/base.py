from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx


class MessagingError(Exception):
    """A platform call failed (not connected, provider error, bad recipient...)."""

    def __init__(self, message: str, *, platform: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code


@dataclass
class Message:
    id: str
    chat_id: str
    text: str
    platform: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    sender_username: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "text": self.text,
            "platform": self.platform,
            "timestamp": self.timestamp.isoformat(),
            "sender": {
                "id": self.sender_id,
                "name": self.sender_name,
                "username": self.sender_username,
            },
            "metadata": dict(self.metadata),
        }


@dataclass
class SendOptions:
    parse_mode: Optional[str] = None  # HTML | Markdown
    disable_notification: bool = False
    reply_to_message_id: Optional[str] = None
    # rows of {"text", "callback_data"?, "url"?}
    inline_keyboard: Optional[List[List[dict]]] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SendOptions":
        data = data or {}
        return cls(
            parse_mode=data.get("parse_mode") or data.get("parseMode"),
            disable_notification=bool(data.get("disable_notification") or data.get("disableNotification")),
            reply_to_message_id=data.get("reply_to_message_id") or data.get("replyToMessageId"),
            inline_keyboard=data.get("inline_keyboard") or data.get("inlineKeyboard"),
        )


class MessagingPlatform(ABC):
    name: str = "abstract"

    def __init__(
        self,
        *,
        timeout: float = 12.0,
        connect_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.is_connected = False
        self._timeout = httpx.Timeout(float(timeout), connect=float(connect_timeout))
        # Tests inject httpx.MockTransport here.
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def send_message(self, chat_id: str, text: str, options: Optional[SendOptions] = None) -> Message: ...

    @abstractmethod
    async def receive_message(self, webhook_data: Any) -> Optional[Message]: ...

    @abstractmethod
    def validate_webhook(self, webhook_data: Any) -> bool: ...

    async def get_message_history(self, chat_id: str, limit: int = 50) -> List[Message]:
        return []

    @abstractmethod
    async def get_status(self) -> dict: ...
