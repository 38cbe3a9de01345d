from __future__ import annotations

from contextvars import ContextVar, Token
from typing import Optional
import uuid

# NOTE: request_id is request-scoped for HTTP handlers. platform/chat_id are bound by the
# inbound processor while a chat message is handled; workers have empty values otherwise.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_PLATFORM: ContextVar[Optional[str]] = ContextVar("platform", default=None)
_CHAT_ID: ContextVar[Optional[str]] = ContextVar("chat_id", default=None)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    rid = (value or "").strip() or uuid.uuid4().hex
    tok = _REQUEST_ID.set(rid)
    return rid, tok


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_platform() -> Optional[str]:
    return _PLATFORM.get()


def get_chat_id() -> Optional[str]:
    return _CHAT_ID.get()


def bind_chat(platform: Optional[str], chat_id: Optional[str]) -> tuple[Token[Optional[str]], Token[Optional[str]]]:
    p = (platform or "").strip() or None
    c = str(chat_id).strip() if chat_id is not None else None
    return _PLATFORM.set(p), _CHAT_ID.set(c or None)


def reset_chat(tokens: tuple[Token[Optional[str]], Token[Optional[str]]]) -> None:
    ptok, ctok = tokens
    _CHAT_ID.reset(ctok)
    _PLATFORM.reset(ptok)
