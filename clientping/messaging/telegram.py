from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx

from .base import Message, MessagingError, MessagingPlatform, SendOptions

log = logging.getLogger(__name__)


def _ts(epoch: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def reply_to_id(value: Any) -> int:
    """Telegram message ids are integers; anything else is a caller error."""
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise MessagingError(f"Invalid reply_to_message_id: {value!r}", platform="telegram", status_code=400) from None


class TelegramPlatform(MessagingPlatform):
    """Telegram Bot API over plain HTTPS (webhook or long-polling)."""

    name = "telegram"

    def __init__(
        self,
        token: str,
        webhook_url: Optional[str] = None,
        *,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.telegram.org",
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.token = (token or "").strip()
        self.webhook_url = (webhook_url or "").strip() or None
        self.webhook_secret = (webhook_secret or "").strip() or None
        self.api_base = api_base.rstrip("/")
        self.bot_info: Optional[dict] = None

    async def _call(self, method: str, payload: Optional[dict] = None, *, timeout: Optional[float] = None) -> Any:
        if not self.token:
            raise MessagingError("Telegram bot token is not configured", platform=self.name)
        url = f"{self.api_base}/bot{self.token}/{method}"
        try:
            async with self._client() as client:
                kwargs = {"json": payload or {}}
                if timeout is not None:
                    kwargs["timeout"] = timeout
                response = await client.post(url, **kwargs)
        except httpx.HTTPError as exc:
            raise MessagingError(f"Telegram {method} failed: {exc}", platform=self.name) from exc
        try:
            body = response.json()
        except ValueError:
            body = {"ok": False, "description": response.text}
        if response.status_code >= 400 or not body.get("ok"):
            raise MessagingError(
                f"Telegram {method} failed: {body.get('description') or response.status_code}",
                platform=self.name,
                status_code=response.status_code,
            )
        return body.get("result")

    async def connect(self) -> None:
        try:
            me = await self._call("getMe")
            self.bot_info = me or {}
            if self.webhook_url:
                await self.setup_webhook(self.webhook_url, self.webhook_secret)
        except MessagingError:
            self.is_connected = False
            raise
        self.is_connected = True
        log.info("Telegram bot connected: @%s", (self.bot_info or {}).get("username"))

    async def disconnect(self) -> None:
        self.is_connected = False

    def _to_message(self, raw: dict, chat_id: str, text: str) -> Message:
        sender = raw.get("from") or {}
        return Message(
            id=str(raw.get("message_id", "")),
            chat_id=str(chat_id),
            text=text,
            platform=self.name,
            timestamp=_ts(raw.get("date")),
            sender_id=str(sender["id"]) if sender.get("id") is not None else "bot",
            sender_name=sender.get("first_name"),
            sender_username=sender.get("username"),
            metadata={"telegram_message_id": raw.get("message_id"), "chat": raw.get("chat")},
        )

    async def send_message(self, chat_id: str, text: str, options: Optional[SendOptions] = None) -> Message:
        payload: dict = {"chat_id": chat_id, "text": text}
        if options:
            if options.parse_mode:
                payload["parse_mode"] = options.parse_mode
            if options.disable_notification:
                payload["disable_notification"] = True
            if options.reply_to_message_id:
                payload["reply_to_message_id"] = reply_to_id(options.reply_to_message_id)
            if options.inline_keyboard:
                payload["reply_markup"] = {
                    "inline_keyboard": [
                        [
                            {
                                k: v
                                for k, v in {
                                    "text": b.get("text"),
                                    "callback_data": b.get("callback_data") or b.get("callbackData"),
                                    "url": b.get("url"),
                                }.items()
                                if v is not None
                            }
                            for b in row
                        ]
                        for row in options.inline_keyboard
                    ]
                }
        sent = await self._call("sendMessage", payload)
        return self._to_message(sent or {}, chat_id, text)

    async def send_photo(self, chat_id: str, photo: str, caption: Optional[str] = None) -> Message:
        payload = {"chat_id": chat_id, "photo": photo}
        if caption:
            payload["caption"] = caption
        sent = await self._call("sendPhoto", payload)
        msg = self._to_message(sent or {}, chat_id, caption or "")
        msg.metadata["photo"] = (sent or {}).get("photo")
        return msg

    def validate_webhook(self, webhook_data: Any) -> bool:
        return isinstance(webhook_data, dict) and bool(
            webhook_data.get("message") or webhook_data.get("callback_query")
        )

    async def receive_message(self, webhook_data: Any) -> Optional[Message]:
        if not self.validate_webhook(webhook_data):
            return None
        tg = webhook_data.get("message")
        if not isinstance(tg, dict):
            return None
        try:
            chat_id = str(tg["chat"]["id"])
        except (KeyError, TypeError):
            log.warning("Telegram update without chat id ignored")
            return None
        sender = tg.get("from") or {}
        return Message(
            id=str(tg.get("message_id", "")),
            chat_id=chat_id,
            text=tg.get("text") or "",
            platform=self.name,
            timestamp=_ts(tg.get("date")),
            sender_id=str(sender.get("id") or chat_id),
            sender_name=sender.get("first_name"),
            sender_username=sender.get("username"),
            metadata={
                "telegram_message_id": tg.get("message_id"),
                "chat": tg.get("chat"),
                "entities": tg.get("entities"),
                "update_id": webhook_data.get("update_id"),
            },
        )

    async def get_message_history(self, chat_id: str, limit: int = 50) -> List[Message]:
        # The Bot API has no history endpoint.
        log.warning("Telegram Bot API does not provide message history")
        return []

    async def get_status(self) -> dict:
        try:
            me = await self._call("getMe")
        except MessagingError as exc:
            return {"connected": False, "error": str(exc)}
        return {
            "connected": self.is_connected,
            "bot_info": {
                "id": me.get("id"),
                "username": me.get("username"),
                "first_name": me.get("first_name"),
                "is_bot": me.get("is_bot"),
            },
        }

    async def setup_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        payload = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            payload["secret_token"] = secret_token
        await self._call("setWebhook", payload)
        self.webhook_url = url
        if secret_token:
            self.webhook_secret = secret_token
        log.info("Telegram webhook set to %s", url)
        return True

    async def remove_webhook(self) -> bool:
        await self._call("deleteWebhook", {"drop_pending_updates": False})
        self.webhook_url = None
        return True

    async def get_webhook_info(self) -> dict:
        return await self._call("getWebhookInfo") or {}

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 25) -> List[dict]:
        payload: dict = {"timeout": int(timeout), "allowed_updates": ["message", "callback_query"]}
        if offset is not None:
            payload["offset"] = int(offset)
        # Long-poll: the HTTP read timeout must outlast Telegram's hold time.
        return await self._call("getUpdates", payload, timeout=float(timeout) + 10.0) or []
