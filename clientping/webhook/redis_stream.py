from __future__ import annotations

import logging

from .runtime import WebhookRuntime

log = logging.getLogger(__name__)


async def ensure_webhook_stream_group(rt: WebhookRuntime) -> bool:
    """Create the webhook stream + consumer group if missing."""
    r = rt.redis()
    if r is None or not rt.use_redis_stream:
        return False
    try:
        await r.xgroup_create(rt.stream_key, rt.stream_group, id="0-0", mkstream=True)
    except Exception as exc:
        # BUSYGROUP: group already exists
        if "BUSYGROUP" not in str(exc).upper():
            log.warning("Failed to create webhook stream group %s: %s", rt.stream_group, exc)
            return False
    return True
