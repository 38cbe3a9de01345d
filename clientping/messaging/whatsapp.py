from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .base import Message, MessagingError, MessagingPlatform, SendOptions

log = logging.getLogger(__name__)


def normalize_recipient(to: str) -> str:
    return re.sub(r"\D", "", str(to or ""))


class WhatsAppPlatform(MessagingPlatform):
    """WhatsApp Cloud API (Graph) sender + webhook parser."""

    name = "whatsapp"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        *,
        verify_token: str = "",
        api_version: str = "v19.0",
        graph_base: str = "https://graph.facebook.com",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.access_token = (access_token or "").strip()
        self.phone_number_id = (phone_number_id or "").strip()
        self.verify_token = verify_token or ""
        self.base_url = f"{graph_base.rstrip('/')}/{api_version}/{self.phone_number_id}"
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        self._sleep = sleep

    def _require_config(self) -> None:
        if not self.access_token or not self.phone_number_id:
            raise MessagingError("WhatsApp configuration is missing", platform=self.name)

    async def connect(self) -> None:
        self._require_config()
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False

    async def send_message(self, chat_id: str, text: str, options: Optional[SendOptions] = None) -> Message:
        self._require_config()
        to = normalize_recipient(chat_id)
        if not to:
            raise MessagingError(f"Invalid WhatsApp recipient: {chat_id!r}", platform=self.name)
        payload: dict = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        if options and options.reply_to_message_id:
            payload["context"] = {"message_id": options.reply_to_message_id}
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/messages", json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            raise MessagingError(f"WhatsApp send failed: {exc}", platform=self.name) from exc
        # WhatsApp may return non-JSON on errors.
        try:
            result = response.json()
        except ValueError:
            result = {"status_code": response.status_code, "text": response.text}
        if response.status_code < 200 or response.status_code >= 300:
            log.error("WhatsApp API error %s: %s", response.status_code, result)
            raise MessagingError(
                f"WhatsApp API error: {response.status_code}",
                platform=self.name,
                status_code=response.status_code,
            )
        wamid = ""
        try:
            wamid = str(result["messages"][0]["id"])
        except (KeyError, IndexError, TypeError):
            pass
        return Message(id=wamid, chat_id=to, text=text, platform=self.name, sender_id="business")

    async def send_bulk(self, messages: List[Dict[str, str]], delay: float = 1.0) -> List[dict]:
        """Send sequentially, pausing ``delay`` seconds between messages to stay under rate limits."""
        results = []
        for i, item in enumerate(messages or []):
            to = str(item.get("to") or "")
            try:
                await self.send_message(to, str(item.get("message") or ""))
                ok = True
            except MessagingError as exc:
                log.warning("Bulk send to %s failed: %s", to, exc)
                ok = False
            results.append({"to": to, "success": ok})
            if delay and i < len(messages) - 1:
                await self._sleep(delay)
        return results

    def verify_subscription(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> Optional[str]:
        if mode == "subscribe" and token and self.verify_token and token == self.verify_token and challenge:
            return challenge
        return None

    def validate_webhook(self, webhook_data: Any) -> bool:
        return isinstance(webhook_data, dict) and isinstance(webhook_data.get("entry"), list)

    def parse_messages(self, webhook_data: Any) -> List[Message]:
        """All inbound user messages in a Cloud API webhook (statuses are ignored)."""
        if not self.validate_webhook(webhook_data):
            return []
        out: List[Message] = []
        for entry in webhook_data.get("entry") or []:
            for change in (entry or {}).get("changes") or []:
                value = (change or {}).get("value") or {}
                names = {
                    str(c.get("wa_id")): ((c.get("profile") or {}).get("name"))
                    for c in value.get("contacts") or []
                    if isinstance(c, dict)
                }
                for m in value.get("messages") or []:
                    if not isinstance(m, dict) or not m.get("from"):
                        continue
                    text = ""
                    mtype = m.get("type")
                    if mtype == "text":
                        text = (m.get("text") or {}).get("body") or ""
                    elif mtype == "button":
                        text = (m.get("button") or {}).get("text") or ""
                    elif mtype == "interactive":
                        inter = m.get("interactive") or {}
                        text = (inter.get("button_reply") or inter.get("list_reply") or {}).get("title") or ""
                    try:
                        ts = datetime.fromtimestamp(int(m.get("timestamp")), tz=timezone.utc)
                    except (TypeError, ValueError):
                        ts = datetime.now(timezone.utc)
                    sender = str(m["from"])
                    out.append(Message(
                        id=str(m.get("id") or ""),
                        chat_id=sender,
                        text=text,
                        platform=self.name,
                        timestamp=ts,
                        sender_id=sender,
                        sender_name=names.get(sender),
                        metadata={
                            "type": mtype,
                            "phone_number_id": (value.get("metadata") or {}).get("phone_number_id"),
                        },
                    ))
        return out

    async def receive_message(self, webhook_data: Any) -> Optional[Message]:
        msgs = self.parse_messages(webhook_data)
        return msgs[0] if msgs else None

    async def get_status(self) -> dict:
        if not self.access_token or not self.phone_number_id:
            return {"connected": False, "error": "WhatsApp configuration is missing"}
        try:
            async with self._client() as client:
                response = await client.get(
                    self.base_url,
                    params={"fields": "display_phone_number,verified_name,quality_rating"},
                    headers=self.headers,
                )
            info = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return {"connected": False, "error": str(exc)}
        if response.status_code >= 400:
            err = (info.get("error") or {}).get("message") if isinstance(info, dict) else None
            return {"connected": False, "error": err or f"HTTP {response.status_code}"}
        return {"connected": self.is_connected, "phone_info": info}
