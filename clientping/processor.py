from __future__ import annotations

import asyncio
import logging
import weakref
from typing import List, Optional

from .ai_responder import AIResponder
from .automation import AutomationEngine, AutomationResult, ContactManager
from .messaging import Message, MessagingError, MessagingManager
from .observability.context import bind_chat, reset_chat

log = logging.getLogger(__name__)


def is_ignored_command(text: str) -> bool:
    """Bot commands are dropped, except /start (a first message)."""
    t = (text or "").strip()
    if not t.startswith("/"):
        return False
    cmd = t.split()[0].split("@")[0].lower()
    return cmd != "/start"


class InboundProcessor:
    """Turns provider webhook envelopes into automation runs and outbound replies.

    Envelope shape: ``{"platform": "telegram" | "whatsapp", "payload": <provider JSON>}``.
    """

    def __init__(
        self,
        engine: AutomationEngine,
        contacts: ContactManager,
        messaging: MessagingManager,
        ai: AIResponder,
        *,
        auto_ai_reply: bool = False,
        fallback_reply: str = "Sorry, something went wrong. Please try again.",
    ):
        self.engine = engine
        self.contacts = contacts
        self.messaging = messaging
        self.ai = ai
        self.auto_ai_reply = auto_ai_reply
        self.fallback_reply = fallback_reply
        # Entries vanish once no task holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, platform: str, chat_id: str) -> asyncio.Lock:
        key = f"{platform}:{chat_id}"
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _parse(self, platform: str, payload: dict) -> List[Message]:
        p = self.messaging.get_platform(platform)
        if p is None:
            log.warning("Dropping webhook for unconfigured platform %s", platform)
            return []
        parse_many = getattr(p, "parse_messages", None)
        if parse_many is not None:
            return list(parse_many(payload))
        msg = await p.receive_message(payload)
        return [msg] if msg else []

    async def process_incoming_message(self, envelope: dict) -> List[AutomationResult]:
        """Never raises; returns one result per message that reached the engine."""
        results: List[AutomationResult] = []
        try:
            platform = str((envelope or {}).get("platform") or "").strip().lower()
            payload = (envelope or {}).get("payload") or {}
            messages = await self._parse(platform, payload)
        except Exception:
            log.exception("Failed to parse inbound webhook envelope")
            return results

        for message in messages:
            if not (message.text or "").strip():
                continue
            if is_ignored_command(message.text):
                log.debug("Ignoring bot command %s", message.text.split()[0])
                continue
            tokens = bind_chat(platform, message.chat_id)
            try:
                async with self._lock_for(platform, message.chat_id):
                    result = await self._handle(platform, message)
                if result is not None:
                    results.append(result)
            finally:
                reset_chat(tokens)
        return results

    async def _handle(self, platform: str, message: Message) -> Optional[AutomationResult]:
        chat_id = message.chat_id
        user_id = message.sender_id or chat_id
        try:
            contact, created = await self.contacts.get_or_create_contact(chat_id, user_id, message.sender_name)
            if created:
                log.info("New contact %s", contact.id)
            if contact.is_blocked:
                log.info("Contact is blocked; skipping automation")
                return None
            await self.contacts.increment_message_count(chat_id)

            result = await self.engine.process_message(chat_id, message.text, user_id, message.sender_name)
        except Exception:
            log.exception("Inbound processing failed")
            await self._send_fallback(platform, chat_id)
            return None

        try:
            await self._deliver(platform, message, result)
        except Exception as exc:
            log.error("Reply delivery failed: %s", exc)
            await self._send_fallback(platform, chat_id)
            return result

        if result.error:
            log.warning("Flow %s finished with error: %s", result.flow_id, result.error)
            await self._send_fallback(platform, chat_id)
        return result

    async def _ai_text(self, message: Message, prompt: Optional[str]) -> str:
        ctx = await self.engine.get_user_context(message.chat_id)
        return await self.ai.generate(
            message.text,
            user_name=message.sender_name,
            prompt=prompt,
            history=ctx.message_history if ctx else None,
        )

    async def _deliver(self, platform: str, message: Message, result: AutomationResult) -> None:
        for reply in result.replies:
            if reply.kind == "ai":
                text = await self._ai_text(message, reply.prompt)
            else:
                text = reply.text or ""
            if text.strip():
                await self.messaging.send_message(message.chat_id, text, platform)

        if not result.triggered and not result.error and self.auto_ai_reply:
            text = await self._ai_text(message, None)
            await self.messaging.send_message(message.chat_id, text, platform)

    async def _send_fallback(self, platform: str, chat_id: str) -> None:
        if not self.fallback_reply:
            return
        try:
            await self.messaging.send_message(chat_id, self.fallback_reply, platform)
        except MessagingError as exc:
            log.error("Fallback reply failed: %s", exc)
        except Exception:
            log.exception("Fallback reply failed")
