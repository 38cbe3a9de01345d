from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional


@dataclass
class WebhookState:
    tasks: List[asyncio.Task] = field(default_factory=list)
    # Telegram getUpdates offset (polling mode only)
    polling_offset: Optional[int] = None


@dataclass
class WebhookRuntime:
    # Core dependencies (injected from clientping.main)
    redis_manager: Any
    processor: Any
    messaging: Any
    vlog: Callable[..., None]

    # Verification
    telegram_secret: str
    whatsapp_verify_token: str
    meta_app_secret: str

    # Queue config
    use_redis_stream: bool
    stream_key: str
    stream_group: str
    stream_dlq_key: str
    max_attempts: int
    claim_min_idle_ms: int
    queue_maxsize: int
    enqueue_timeout_seconds: float
    workers: int
    processing_timeout_seconds: float
    process_inline: bool = False
    telegram_polling: bool = False

    # Created on startup inside the running loop
    queue: Optional[asyncio.Queue] = None
    state: WebhookState = field(default_factory=WebhookState)

    @property
    def attempts_key(self) -> str:
        return f"{self.stream_key}:attempts"

    def redis(self):
        return getattr(self.redis_manager, "redis_client", None)

    def backend_name(self) -> str:
        if self.process_inline:
            return "inline"
        if self.use_redis_stream and self.redis() is not None:
            return "redis_stream"
        return "memory"
