from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .base import Message, MessagingError, MessagingPlatform, SendOptions
from .telegram import TelegramPlatform
from .whatsapp import WhatsAppPlatform

log = logging.getLogger(__name__)


class MessagingManager:
    def __init__(self, platforms: Optional[List[MessagingPlatform]] = None, *, max_concurrency: int = 4):
        self.platforms: Dict[str, MessagingPlatform] = {}
        self.default_platform: Optional[str] = None
        # Caps in-flight provider sends per instance
        self._send_semaphore = asyncio.Semaphore(max(1, int(max_concurrency)))
        for p in platforms or []:
            self.register(p)

    @classmethod
    def from_config(cls, cfg: Any) -> "MessagingManager":
        """Register every platform whose credentials are present in ``cfg`` (the config module)."""
        mgr = cls(max_concurrency=cfg.PROVIDER_MAX_CONCURRENCY)
        http = {
            "timeout": cfg.HTTP_TIMEOUT_SECONDS,
            "connect_timeout": cfg.HTTP_CONNECT_TIMEOUT_SECONDS,
        }
        if cfg.TELEGRAM_BOT_TOKEN:
            mgr.register(TelegramPlatform(
                cfg.TELEGRAM_BOT_TOKEN,
                # polling and webhooks are mutually exclusive on the Bot API
                None if cfg.TELEGRAM_USE_POLLING else cfg.TELEGRAM_WEBHOOK_URL,
                webhook_secret=cfg.TELEGRAM_WEBHOOK_SECRET,
                api_base=cfg.TELEGRAM_API_BASE,
                **http,
            ))
        if cfg.WHATSAPP_ACCESS_TOKEN and cfg.WHATSAPP_PHONE_NUMBER_ID:
            mgr.register(WhatsAppPlatform(
                cfg.WHATSAPP_ACCESS_TOKEN,
                cfg.WHATSAPP_PHONE_NUMBER_ID,
                verify_token=cfg.WHATSAPP_VERIFY_TOKEN,
                api_version=cfg.WHATSAPP_API_VERSION,
                **http,
            ))
        return mgr

    def register(self, platform: MessagingPlatform) -> None:
        self.platforms[platform.name] = platform
        if not self.default_platform:
            self.default_platform = platform.name

    def get_platform(self, name: Optional[str] = None) -> Optional[MessagingPlatform]:
        key = name or self.default_platform
        return self.platforms.get(key) if key else None

    def connected_platforms(self) -> List[MessagingPlatform]:
        return [p for p in self.platforms.values() if p.is_connected]

    async def _each(self, op: str) -> None:
        async def _run(p: MessagingPlatform):
            try:
                await getattr(p, op)()
            except Exception as exc:
                log.error("Failed to %s %s: %s", op, p.name, exc)

        await asyncio.gather(*(_run(p) for p in self.platforms.values()))

    async def connect_all(self) -> None:
        await self._each("connect")

    async def disconnect_all(self) -> None:
        await self._each("disconnect")

    async def send_message(
        self,
        chat_id: str,
        text: str,
        platform: Optional[str] = None,
        options: Optional[SendOptions] = None,
    ) -> Message:
        p = self.get_platform(platform)
        if p is None:
            raise MessagingError(f"Platform {platform or 'default'} not found or not available", platform=platform)
        async with self._send_semaphore:
            return await p.send_message(chat_id, text, options)

    async def receive_message(self, webhook_data: Any, platform: str) -> Optional[Message]:
        p = self.platforms.get(platform)
        if p is None:
            log.error("Platform %s not found", platform)
            return None
        return await p.receive_message(webhook_data)

    async def get_status_all(self) -> dict:
        status = {}
        for name, p in self.platforms.items():
            status[name] = await p.get_status()
        return {
            "platforms": status,
            "default_platform": self.default_platform,
            "connected_count": len(self.connected_platforms()),
            "total_count": len(self.platforms),
        }

    def telegram(self) -> TelegramPlatform:
        p = self.platforms.get("telegram")
        if not isinstance(p, TelegramPlatform):
            raise MessagingError("Telegram platform not available", platform="telegram")
        return p

    def whatsapp(self) -> WhatsAppPlatform:
        p = self.platforms.get("whatsapp")
        if not isinstance(p, WhatsAppPlatform):
            raise MessagingError("WhatsApp platform not available", platform="whatsapp")
        return p
