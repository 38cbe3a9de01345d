"""Conversational replies via the OpenAI Chat Completions HTTP API.

Fails open: with no API key, or on any provider error, a canned greeting that
echoes the user's message is returned instead.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are ClientPing AI Assistant, a friendly assistant for business messaging automation. "
    "Answer briefly and helpfully. Plain text only."
)


def fallback_reply(user_name: Optional[str], text: str) -> str:
    name = user_name or "User"
    return (
        f'🤖 Hello {name}! I received your message: "{text}". '
        "I'm ClientPing AI Assistant and I'm here to help!"
    )


class AIResponder:
    def __init__(
        self,
        api_key: str = "",
        *,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_tokens: int = 300,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = (api_key or "").strip()
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = int(max_tokens)
        self._timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self,
        text: str,
        *,
        user_name: Optional[str] = None,
        prompt: Optional[str] = None,
        history: Optional[list] = None,
    ) -> str:
        if not self.enabled:
            return fallback_reply(user_name, text)

        messages = [{"role": "system", "content": SYSTEM_PROMPT}]
        if prompt:
            messages.append({"role": "system", "content": prompt})
        # earlier user turns give the model some context; the current text is appended last
        for past in (history or [])[:-1][-5:]:
            messages.append({"role": "user", "content": str(past)})
        content = text if not user_name else f"{user_name}: {text}"
        messages.append({"role": "user", "content": content})

        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": 0.7,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            if response.status_code >= 400:
                log.warning("OpenAI API error %s: %s", response.status_code, response.text[:300])
                return fallback_reply(user_name, text)
            data = response.json()
            reply = (data["choices"][0]["message"]["content"] or "").strip()
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
            log.warning("AI generation failed: %s", exc)
            return fallback_reply(user_name, text)
        return reply or fallback_reply(user_name, text)
