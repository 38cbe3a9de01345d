from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .runtime import WebhookRuntime

log = logging.getLogger(__name__)


def verify_meta_signature(secret: str, body: bytes, header: str) -> bool:
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    presented = header.split("=", 1)[1] if "=" in header else header
    return bool(presented) and hmac.compare_digest(presented, expected)


async def dispatch_envelope(rt: WebhookRuntime, envelope: dict):
    """Process inline or enqueue; returns an error response, or None when accepted."""
    if rt.process_inline:
        try:
            await asyncio.wait_for(
                rt.processor.process_incoming_message(envelope),
                timeout=max(1.0, float(rt.processing_timeout_seconds)),
            )
        except asyncio.TimeoutError:
            log.error("Inline webhook processing timed out after %ss", rt.processing_timeout_seconds)
        except Exception:
            log.exception("Inline webhook processing failed")
        return None

    # ACK fast: enqueue for background processing.
    try:
        r = rt.redis()
        if r is not None and rt.use_redis_stream:
            await asyncio.wait_for(
                r.xadd(rt.stream_key, {"payload": json.dumps(envelope)}),
                timeout=max(0.2, float(rt.enqueue_timeout_seconds)),
            )
        elif rt.queue is not None:
            rt.queue.put_nowait(envelope)
        else:
            return PlainTextResponse("Webhook queue not ready", status_code=503)
    except asyncio.QueueFull:
        return PlainTextResponse("Webhook queue full", status_code=503)
    except Exception as exc:
        log.warning("Webhook enqueue failed: %s", exc)
        return PlainTextResponse("Webhook enqueue failed", status_code=503)
    return None


def _has_whatsapp_messages(data) -> bool:
    # Status callbacks (sent/delivered/read) carry no inbound messages.
    if not isinstance(data, dict):
        return False
    for entry in data.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            if isinstance(change, dict) and (change.get("value") or {}).get("messages"):
                return True
    return False


def create_webhook_router(rt: WebhookRuntime) -> APIRouter:
    router = APIRouter()

    @router.post("/api/telegram/webhook")
    async def telegram_webhook(request: Request):
        """Telegram Bot API webhook (ingress)."""
        if rt.telegram_secret:
            presented = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if not hmac.compare_digest(presented, rt.telegram_secret):
                rt.vlog("❌ Invalid Telegram webhook secret")
                return PlainTextResponse("Invalid secret token", status_code=401)
        try:
            data = await request.json()
        except ValueError:
            return PlainTextResponse("Bad Request", status_code=400)
        rt.vlog("📨 Telegram update:", json.dumps(data)[:2000])
        if not isinstance(data, dict) or not (data.get("message") or data.get("callback_query")):
            return {"ok": True, "skipped": True}
        err = await dispatch_envelope(rt, {"platform": "telegram", "payload": data})
        return err or {"ok": True}

    @router.get("/api/whatsapp/webhook")
    async def whatsapp_verify(request: Request):
        params = request.query_params
        mode = params.get("hub.mode")
        token = params.get("hub.verify_token")
        challenge = params.get("hub.challenge")
        rt.vlog(f"🔐 Webhook verification: mode={mode}, challenge={challenge}")
        if mode == "subscribe" and token and rt.whatsapp_verify_token and token == rt.whatsapp_verify_token and challenge:
            return PlainTextResponse(challenge)
        return PlainTextResponse("Verification failed", status_code=403)

    @router.post("/api/whatsapp/webhook")
    async def whatsapp_webhook(request: Request):
        """WhatsApp Cloud API webhook (ingress)."""
        body = await request.body()
        if rt.meta_app_secret:
            if not verify_meta_signature(rt.meta_app_secret, body, request.headers.get("X-Hub-Signature-256", "")):
                rt.vlog("❌ Invalid webhook signature")
                return PlainTextResponse("Invalid signature", status_code=401)
        try:
            data = json.loads(body.decode("utf-8") or "{}")
        except ValueError:
            return PlainTextResponse("Bad Request", status_code=400)
        rt.vlog("📥 Incoming WhatsApp payload:", json.dumps(data)[:2000])

        if not _has_whatsapp_messages(data):
            return {"ok": True, "skipped": True}
        err = await dispatch_envelope(rt, {"platform": "whatsapp", "payload": data})
        return err or {"ok": True}

    @router.get("/api/webhook/status")
    async def webhook_status():
        q = rt.queue
        return JSONResponse({
            "backend": rt.backend_name(),
            "queue_size": q.qsize() if q is not None else None,
            "queue_maxsize": rt.queue_maxsize,
            "workers": len(rt.state.tasks),
        })

    return router
