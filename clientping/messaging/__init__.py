from .base import Message, MessagingError, MessagingPlatform, SendOptions
from .manager import MessagingManager
from .telegram import TelegramPlatform
from .whatsapp import WhatsAppPlatform

__all__ = [
    "Message",
    "MessagingError",
    "MessagingManager",
    "MessagingPlatform",
    "SendOptions",
    "TelegramPlatform",
    "WhatsAppPlatform",
]
