from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import List, Optional

from .redis_stream import ensure_webhook_stream_group
from .router import dispatch_envelope
from .runtime import WebhookRuntime

log = logging.getLogger(__name__)

CLAIM_INTERVAL_SECONDS = 15
READ_COUNT = 25
READ_BLOCK_MS = 5000
STREAM_RETRY_SECONDS = 1.0
QUEUE_POLL_SECONDS = 1.0
POLL_RETRY_SECONDS = 5.0


def _decode_payload(fields) -> tuple[Optional[dict], str]:
    """Return (envelope, raw_text) from a stream entry's fields."""
    raw = None
    if isinstance(fields, dict):
        raw = fields.get("payload")
        if raw is None:
            raw = fields.get(b"payload")
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "ignore")
    if not isinstance(raw, str):
        return None, ""
    try:
        payload = json.loads(raw)
    except ValueError:
        return None, raw
    return (payload if isinstance(payload, dict) else None), raw


async def _process_one(rt: WebhookRuntime, envelope: dict) -> None:
    await asyncio.wait_for(
        rt.processor.process_incoming_message(envelope),
        timeout=max(1.0, float(rt.processing_timeout_seconds)),
    )


async def _handle_stream_entry(rt: WebhookRuntime, r, worker_id: int, msg_id, fields) -> None:
    envelope, raw = _decode_payload(fields)
    try:
        if envelope is None:
            raise ValueError("bad payload")
        await _process_one(rt, envelope)
    except Exception as exc:
        error = "timeout" if isinstance(exc, asyncio.TimeoutError) else str(exc)
        log.error("Webhook worker %s: msg %s failed: %s", worker_id, msg_id, error)
        try:
            attempts = await r.hincrby(rt.attempts_key, str(msg_id), 1)
        except Exception:
            attempts = 1
        if int(attempts) >= int(rt.max_attempts):
            # Give up: park it in the DLQ so it stops being re-claimed.
            try:
                await r.xadd(rt.stream_dlq_key, {"id": str(msg_id), "error": error, "payload": raw})
            except Exception as dlq_exc:
                log.warning("Webhook DLQ write failed for %s: %s", msg_id, dlq_exc)
            await r.xack(rt.stream_key, rt.stream_group, msg_id)
            await r.hdel(rt.attempts_key, str(msg_id))
        return
    await r.xack(rt.stream_key, rt.stream_group, msg_id)
    try:
        await r.hdel(rt.attempts_key, str(msg_id))
    except Exception:
        pass


async def _process_queued(rt: WebhookRuntime, worker_id: int, data: dict) -> None:
    try:
        await _process_one(rt, data)
    except asyncio.TimeoutError:
        log.error(
            "Webhook worker %s: in-memory processing timed out after %ss",
            worker_id,
            rt.processing_timeout_seconds,
        )
    except Exception as exc:
        log.exception("Webhook worker %s: in-memory processing failed: %s", worker_id, exc)
    finally:
        rt.queue.task_done()


async def webhook_worker(rt: WebhookRuntime, worker_id: int):
    consumer = f"w{worker_id}-{uuid.uuid4().hex[:10]}"
    last_claim = 0.0

    while True:
        r = rt.redis()

        # Entries queued in memory while Redis was away are drained first.
        if rt.queue is not None and not rt.queue.empty():
            await _process_queued(rt, worker_id, rt.queue.get_nowait())
            continue

        # Preferred: Redis Streams (durable)
        if r is not None and rt.use_redis_stream:
            try:
                now = time.time()
                if now - last_claim > CLAIM_INTERVAL_SECONDS:
                    last_claim = now
                    # Re-claim entries a crashed consumer left pending.
                    try:
                        res = await r.xautoclaim(
                            rt.stream_key,
                            rt.stream_group,
                            consumer,
                            min_idle_time=max(1, int(rt.claim_min_idle_ms)),
                            start_id="0-0",
                            count=READ_COUNT,
                        )
                        claimed = res[1] if isinstance(res, (list, tuple)) and len(res) >= 2 else []
                    except Exception:
                        claimed = []
                    for msg_id, fields in claimed or []:
                        await _handle_stream_entry(rt, r, worker_id, msg_id, fields)

                resp = await r.xreadgroup(
                    rt.stream_group,
                    consumer,
                    streams={rt.stream_key: ">"},
                    count=READ_COUNT,
                    block=READ_BLOCK_MS,
                )
                for _stream, messages in resp or []:
                    for msg_id, fields in messages:
                        await _handle_stream_entry(rt, r, worker_id, msg_id, fields)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # dispatch_envelope keeps writing to the stream while Redis is set.
                log.warning(
                    "Webhook worker %s: redis stream read failed, retrying in %ss: %s",
                    worker_id,
                    STREAM_RETRY_SECONDS,
                    exc,
                )
                if "NOGROUP" in str(exc).upper():
                    await ensure_webhook_stream_group(rt)
                await asyncio.sleep(STREAM_RETRY_SECONDS)
            continue

        # Fallback: in-memory queue (not durable); wake up periodically to re-check Redis.
        if rt.queue is None:
            await asyncio.sleep(QUEUE_POLL_SECONDS)
            continue
        try:
            data = await asyncio.wait_for(rt.queue.get(), timeout=QUEUE_POLL_SECONDS)
        except asyncio.TimeoutError:
            continue
        await _process_queued(rt, worker_id, data)


async def telegram_polling_worker(rt: WebhookRuntime, poll_timeout: int = 25):
    """Long-poll getUpdates and feed updates through the normal ingress path."""
    telegram = rt.messaging.telegram()
    try:
        await telegram.remove_webhook()
    except Exception as exc:
        log.warning("Could not remove Telegram webhook before polling: %s", exc)
    while True:
        try:
            updates = await telegram.get_updates(rt.state.polling_offset, timeout=poll_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("Telegram getUpdates failed: %s", exc)
            await asyncio.sleep(POLL_RETRY_SECONDS)
            continue
        for update in updates:
            update_id = update.get("update_id")
            if update_id is not None:
                rt.state.polling_offset = int(update_id) + 1
            if not (update.get("message") or update.get("callback_query")):
                continue
            err = await dispatch_envelope(rt, {"platform": "telegram", "payload": update})
            if err is not None:
                log.warning("Dropped polled Telegram update %s: queue unavailable", update_id)


async def start_webhook_workers(rt: WebhookRuntime) -> List[asyncio.Task]:
    """Start webhook background workers so the webhook routes can ACK quickly."""
    if rt.queue is None:
        rt.queue = asyncio.Queue(maxsize=max(1, int(rt.queue_maxsize)))

    tasks: List[asyncio.Task] = []
    n = max(1, int(rt.workers))
    if not rt.process_inline:
        if rt.redis() is not None and rt.use_redis_stream:
            if not await ensure_webhook_stream_group(rt):
                log.warning("Webhook stream group unavailable; workers will recreate it on read")
        for i in range(n):
            tasks.append(asyncio.create_task(webhook_worker(rt, i + 1)))
        log.info("Webhook workers started: %d (backend=%s)", n, rt.backend_name())

    if rt.telegram_polling:
        try:
            rt.messaging.telegram()
        except Exception as exc:
            log.warning("Telegram polling requested but unavailable: %s", exc)
        else:
            tasks.append(asyncio.create_task(telegram_polling_worker(rt)))
            log.info("Telegram polling worker started")

    rt.state.tasks.extend(tasks)
    return tasks


async def stop_webhook_workers(rt: WebhookRuntime) -> None:
    tasks, rt.state.tasks = rt.state.tasks, []
    for t in tasks:
        t.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
