import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

from . import config
from .ai_responder import AIResponder
from .auth import get_current_user
from .automation import (
    AutomationEngine,
    AutomationError,
    ContactManager,
    DatabaseStore,
    MemoryStore,
    StateStore,
    build_state_store,
)
from .config import (
    ALLOWED_ORIGINS,
    CONTACTS_PAGE_LIMIT,
    HEALTH_STORE_TIMEOUT_SECONDS,
    LOG_LEVEL,
    SEND_TEXT_PER_MIN,
    _vlog,
)
from .messaging import MessagingError, MessagingManager, SendOptions, TelegramPlatform
from .messaging.telegram import reply_to_id
from .observability.context import (
    get_chat_id,
    get_platform,
    get_request_id,
    reset_request_id,
    set_request_id,
)
from .observability.logging import configure_logging
from .processor import InboundProcessor
from .redis_manager import RedisManager
from .webhook import WebhookRuntime, create_webhook_router, start_webhook_workers, stop_webhook_workers

configure_logging(
    level=LOG_LEVEL,
    request_id_getter=get_request_id,
    platform_getter=get_platform,
    chat_getter=get_chat_id,
)
log = logging.getLogger(__name__)

# ── Components ─────────────────────────────────────────────────────
# The store is (re)bound on startup once Redis/DB are reachable; engine and contacts keep
# their identity so the processor and routes never hold a stale reference.
redis_manager = RedisManager(config.REDIS_URL)
state_store: StateStore = MemoryStore()
contact_manager = ContactManager(state_store)
automation_engine = AutomationEngine(
    state_store,
    contact_manager,
    history_limit=config.USER_HISTORY_LIMIT,
    max_depth=config.MAX_FLOW_DEPTH,
)
messaging = MessagingManager.from_config(config)
ai_responder = AIResponder(
    config.OPENAI_API_KEY,
    model=config.OPENAI_MODEL,
    base_url=config.OPENAI_BASE_URL,
    max_tokens=config.OPENAI_MAX_TOKENS,
)
processor = InboundProcessor(
    automation_engine,
    contact_manager,
    messaging,
    ai_responder,
    auto_ai_reply=config.AUTO_AI_REPLY,
    fallback_reply=config.FALLBACK_REPLY,
)
webhook_runtime = WebhookRuntime(
    redis_manager=redis_manager,
    processor=processor,
    messaging=messaging,
    vlog=_vlog,
    telegram_secret=config.TELEGRAM_WEBHOOK_SECRET,
    whatsapp_verify_token=config.WHATSAPP_VERIFY_TOKEN,
    meta_app_secret=config.META_APP_SECRET,
    use_redis_stream=config.WEBHOOK_USE_REDIS_STREAM,
    stream_key=config.WEBHOOK_STREAM_KEY,
    stream_group=config.WEBHOOK_STREAM_GROUP,
    stream_dlq_key=config.WEBHOOK_STREAM_DLQ_KEY,
    max_attempts=config.WEBHOOK_MAX_ATTEMPTS,
    claim_min_idle_ms=config.WEBHOOK_CLAIM_MIN_IDLE_MS,
    queue_maxsize=config.WEBHOOK_QUEUE_MAXSIZE,
    enqueue_timeout_seconds=config.WEBHOOK_ENQUEUE_TIMEOUT_SECONDS,
    workers=config.WEBHOOK_WORKERS,
    processing_timeout_seconds=config.WEBHOOK_PROCESSING_TIMEOUT_SECONDS,
    process_inline=config.WEBHOOK_PROCESS_INLINE,
    telegram_polling=config.TELEGRAM_USE_POLLING,
)


def _bind_store(store: StateStore) -> None:
    global state_store
    state_store = store
    contact_manager.store = store
    automation_engine.store = store


# FastAPI app
app = FastAPI(title="ClientPing", default_response_class=ORJSONResponse)
app.include_router(create_webhook_router(webhook_runtime))


# ── Request context: request_id (for tracing) ──────────────────────
@app.middleware("http")
async def request_id_middleware(request: StarletteRequest, call_next):
    incoming = (request.headers.get("x-request-id") or "").strip()
    rid, tok = set_request_id(incoming or None)
    try:
        resp: StarletteResponse = await call_next(request)
        resp.headers["X-Request-Id"] = rid
        return resp
    finally:
        reset_request_id(tok)


app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics")


# ── Error envelope: {success: false, error} ────────────────────────
def _error(status_code: int, message: Any) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={"success": False, "error": str(message)})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Invalid request body")


@app.exception_handler(AutomationError)
async def _automation_exception_handler(request: Request, exc: AutomationError):
    return _error(400, exc)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error")


def _ok(data: Any) -> dict:
    return {"success": True, "data": data}


def _require(data: dict, *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        label = "field" if len(missing) == 1 else "fields"
        raise HTTPException(status_code=400, detail=f"Missing required {label}: {', '.join(missing)}")


def _chat_id(data: dict) -> Optional[str]:
    v = data.get("chatId", data.get("chat_id"))
    return str(v) if v not in (None, "") else None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Lifecycle ──────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logging.getLogger("httpx").setLevel(logging.WARNING)
    # Connect to Redis only if configured
    if config.REDIS_URL:
        await redis_manager.connect()

    store = build_state_store(
        config.STATE_BACKEND,
        redis_client=redis_manager.redis_client,
        db_path=config.DB_PATH,
        db_url=config.DATABASE_URL,
        pool_min=config.PG_POOL_MIN,
        pool_max=config.PG_POOL_MAX,
        connect_timeout=config.PG_CONNECT_TIMEOUT_SECONDS,
        busy_timeout_ms=config.SQLITE_BUSY_TIMEOUT_MS,
    )
    if isinstance(store, DatabaseStore):
        await store.init_db()
    _bind_store(store)
    log.info("State backend: %s", store.name)

    await contact_manager.initialize()
    await automation_engine.initialize()

    # Initialize rate limiter
    if redis_manager.redis_client:
        try:
            await FastAPILimiter.init(redis_manager.redis_client)
        except Exception as exc:
            log.warning("Rate limiter init failed: %s", exc)

    await messaging.connect_all()
    await start_webhook_workers(webhook_runtime)


@app.on_event("shutdown")
async def shutdown():
    await stop_webhook_workers(webhook_runtime)
    await messaging.disconnect_all()
    await state_store.close()
    await redis_manager.close()


# Optional rate limit dependency that no-ops when limiter is not initialized
async def _optional_rate_limit_send(request: Request, response: StarletteResponse):
    if FastAPILimiter.redis:
        limiter = RateLimiter(times=SEND_TEXT_PER_MIN, seconds=60)
        return await limiter(request, response)


# ── Admin API (Supabase session required) ──────────────────────────
api = APIRouter(prefix="/api", dependencies=[Depends(get_current_user)])


@api.get("/automation/flows")
async def automation_overview(
    action: Optional[str] = Query(None),
    segment: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
):
    if action == "stats":
        return _ok({
            "flows": await automation_engine.get_flow_stats(),
            "users": await automation_engine.get_user_stats(),
            "contacts": await contact_manager.get_contact_stats(),
            "timestamp": _now_iso(),
        })

    if action == "flows":
        flows = await automation_engine.get_all_flows()
        return _ok({"flows": [f.summary() for f in flows]})

    if action == "contacts":
        if search:
            contacts = await contact_manager.search_contacts(search)
        elif segment:
            contacts = await contact_manager.get_contacts_in_segment(segment)
        else:
            contacts = await contact_manager.export_contacts()
        segments = await contact_manager.get_all_segments()
        return _ok({
            "contacts": [c.to_dict() for c in contacts[:CONTACTS_PAGE_LIMIT]],
            "total": len(contacts),
            "segments": [s.to_dict() for s in segments],
        })

    if action == "segments":
        segments = await contact_manager.get_all_segments()
        return _ok({"segments": [s.to_dict() for s in segments]})

    flows = await automation_engine.get_all_flows()
    contact_stats = await contact_manager.get_contact_stats()
    flow_stats = await automation_engine.get_flow_stats()
    return _ok({
        "overview": {
            "flows": len(flows),
            "active_flows": sum(1 for f in flows if f.active),
            "total_contacts": contact_stats["total_contacts"],
            "active_contacts": contact_stats["active_contacts"],
            "new_contacts": contact_stats["new_contacts"],
        },
        "recent_activity": {
            "flow_stats": flow_stats[:5],
            "user_stats": await automation_engine.get_user_stats(),
        },
    })


@api.post("/automation/flows")
async def automation_action(payload: dict = Body(...)):
    action = str(payload.get("action") or "")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="data must be an object")

    if action == "create_flow":
        _require(data, "id", "name", "triggers", "actions")
        flow = await automation_engine.add_flow(data)
        return _ok({"flow": flow.to_dict()})

    if action == "update_flow":
        _require(data, "id")
        updated = await automation_engine.update_flow(data["id"], {
            "name": data.get("name"),
            "description": data.get("description"),
            "triggers": data.get("triggers"),
            "actions": data.get("actions"),
            "active": data.get("active"),
        })
        if not updated:
            raise HTTPException(status_code=404, detail="Flow not found")
        return _ok({"updated": True})

    if action == "toggle_flow":
        _require(data, "id")
        flow = await automation_engine.get_flow(data["id"])
        if not flow:
            raise HTTPException(status_code=404, detail="Flow not found")
        toggled = await automation_engine.update_flow(flow.id, {"active": not flow.active})
        return _ok({"flow_id": flow.id, "active": not flow.active, "updated": toggled})

    if action == "delete_flow":
        _require(data, "id")
        return _ok({"deleted": await automation_engine.delete_flow(data["id"])})

    if action == "create_segment":
        _require(data, "id", "name", "conditions")
        try:
            segment = await contact_manager.create_segment(
                data["id"], data["name"], data.get("description") or "", data["conditions"]
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AutomationError(f"Invalid segment: {exc}") from exc
        return _ok({"segment": segment.to_dict()})

    if action == "update_segment":
        _require(data, "id")
        try:
            updated = await contact_manager.update_segment(data["id"], data)
        except (KeyError, TypeError, ValueError) as exc:
            raise AutomationError(f"Invalid segment: {exc}") from exc
        if not updated:
            raise HTTPException(status_code=404, detail="Segment not found")
        return _ok({"updated": True})

    if action == "delete_segment":
        _require(data, "id")
        return _ok({"deleted": await contact_manager.delete_segment(data["id"])})

    if action == "import_contacts":
        rows = data.get("contacts")
        if not isinstance(rows, list):
            raise HTTPException(status_code=400, detail="Missing required field: contacts")
        return _ok(await contact_manager.import_contacts(rows))

    # Contact actions below are keyed by chatId.
    chat_id = _chat_id(data)

    if action == "update_contact":
        if not chat_id:
            raise HTTPException(status_code=400, detail="Missing required field: chatId")
        updates = {
            "name": data.get("name"),
            "email": data.get("email"),
            "phone": data.get("phone"),
            "notes": data.get("notes"),
            "custom_fields": data.get("customFields", data.get("custom_fields")),
            "tags": data.get("tags"),
        }
        if not await contact_manager.update_contact(chat_id, updates):
            raise HTTPException(status_code=404, detail="Contact not found")
        return _ok({"updated": True})

    if action in ("add_contact_tag", "remove_contact_tag"):
        if not chat_id or not data.get("tag"):
            raise HTTPException(status_code=400, detail="Missing required fields: chatId, tag")
        tag = str(data["tag"])
        if action == "add_contact_tag":
            if not await contact_manager.add_contact_tag(chat_id, tag):
                raise HTTPException(status_code=404, detail="Contact not found")
            return _ok({"added": True})
        if not await contact_manager.remove_contact_tag(chat_id, tag):
            raise HTTPException(status_code=404, detail="Contact not found")
        return _ok({"removed": True})

    if action in ("block_contact", "unblock_contact"):
        if not chat_id:
            raise HTTPException(status_code=400, detail="Missing required field: chatId")
        blocking = action == "block_contact"
        changed = await (contact_manager.block_contact(chat_id) if blocking else contact_manager.unblock_contact(chat_id))
        if not changed:
            raise HTTPException(status_code=404, detail="Contact not found")
        return _ok({"blocked": blocking})

    raise HTTPException(status_code=400, detail="Unknown action")


@api.post("/automation/test")
async def automation_test(payload: dict = Body(...)):
    _require(payload, "platform", "automationType", "message")
    platform = str(payload["platform"])
    chat_id = _chat_id(payload) or f"test_{int(datetime.now(timezone.utc).timestamp() * 1000)}"
    try:
        await messaging.send_message(chat_id, str(payload["message"]), platform)
    except MessagingError as exc:
        log.warning("Test automation send failed: %s", exc)
        raise HTTPException(
            status_code=500,
            detail="Failed to send test message. Please check your platform configuration.",
        )
    return _ok({
        "message": "Test automation message sent successfully",
        "platform": platform,
        "automation_type": payload["automationType"],
        "test_chat_id": chat_id,
        "sent_message": payload["message"],
    })


@api.post("/automation/simulate")
async def automation_simulate(payload: dict = Body(...)):
    """Run the engine for a fake inbound message without sending anything."""
    chat_id = _chat_id(payload)
    if not chat_id or not payload.get("text"):
        raise HTTPException(status_code=400, detail="Missing required fields: chatId, text")
    user_id = str(payload.get("userId") or payload.get("user_id") or chat_id)
    user_name = payload.get("userName") or payload.get("user_name")
    result = await automation_engine.process_message(chat_id, str(payload["text"]), user_id, user_name)
    return _ok(result.to_dict())


# ── Platform endpoints ─────────────────────────────────────────────
def _platform_or_503(getter):
    try:
        return getter()
    except MessagingError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@api.post("/telegram/send", dependencies=[Depends(_optional_rate_limit_send)])
async def telegram_send(payload: dict = Body(...)):
    chat_id = _chat_id(payload)
    if not chat_id or not payload.get("text"):
        raise HTTPException(status_code=400, detail="chatId and text are required")
    options = SendOptions.from_dict(payload.get("options"))
    if options.reply_to_message_id:
        try:
            reply_to_id(options.reply_to_message_id)
        except MessagingError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
    try:
        msg = await messaging.send_message(chat_id, str(payload["text"]), "telegram", options)
    except MessagingError as exc:
        log.warning("Telegram send failed: %s", exc)
        raise HTTPException(status_code=500, detail=f"Failed to send message: {exc}")
    return _ok({
        "message": {
            "id": msg.id,
            "chat_id": msg.chat_id,
            "timestamp": msg.timestamp.isoformat(),
            "platform": msg.platform,
        }
    })


@api.get("/telegram/status")
async def telegram_status():
    return _ok(await messaging.get_status_all())


@api.post("/telegram/setup-webhook")
async def telegram_setup_webhook(payload: dict = Body(default={})):
    telegram = _platform_or_503(messaging.telegram)
    url = str(payload.get("url") or config.TELEGRAM_WEBHOOK_URL or f"{config.BASE_URL}/api/telegram/webhook")
    try:
        await telegram.setup_webhook(url, config.TELEGRAM_WEBHOOK_SECRET or None)
        info = await telegram.get_webhook_info()
    except MessagingError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return _ok({"webhook_url": url, "webhook_info": info})


@api.delete("/telegram/setup-webhook")
async def telegram_remove_webhook():
    telegram = _platform_or_503(messaging.telegram)
    try:
        await telegram.remove_webhook()
    except MessagingError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return _ok({"removed": True})


@api.post("/telegram/validate")
async def telegram_validate(payload: dict = Body(...)):
    """Check a bot token against getMe before the user saves it."""
    token = str(payload.get("token") or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="Bot token is required")
    if not re.fullmatch(r"\d+:[A-Za-z0-9_-]+", token):
        raise HTTPException(status_code=400, detail="Invalid bot token format")
    candidate = TelegramPlatform(
        token,
        api_base=config.TELEGRAM_API_BASE,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        connect_timeout=config.HTTP_CONNECT_TIMEOUT_SECONDS,
    )
    try:
        await candidate.connect()
    except MessagingError:
        raise HTTPException(status_code=400, detail="Invalid bot token or bot not accessible")
    info = candidate.bot_info or {}
    return _ok({
        "bot_id": info.get("id"),
        "bot_username": info.get("username"),
        "bot_name": info.get("first_name"),
        "can_join_groups": info.get("can_join_groups"),
        "can_read_all_group_messages": info.get("can_read_all_group_messages"),
        "supports_inline_queries": info.get("supports_inline_queries"),
    })


@api.post("/whatsapp/send", dependencies=[Depends(_optional_rate_limit_send)])
async def whatsapp_send(payload: dict = Body(...)):
    _require(payload, "to", "message")
    whatsapp = _platform_or_503(messaging.whatsapp)
    try:
        msg = await whatsapp.send_message(str(payload["to"]), str(payload["message"]))
    except MessagingError as exc:
        log.warning("WhatsApp send failed: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to send message")
    return _ok({"message_id": msg.id, "to": msg.chat_id})


@api.post("/whatsapp/send-bulk", dependencies=[Depends(_optional_rate_limit_send)])
async def whatsapp_send_bulk(payload: dict = Body(...)):
    rows = payload.get("messages")
    if not isinstance(rows, list) or not rows:
        raise HTTPException(status_code=400, detail="Missing required field: messages")
    whatsapp = _platform_or_503(messaging.whatsapp)
    results = await whatsapp.send_bulk(rows, delay=config.BULK_SEND_DELAY_SECONDS)
    return _ok({
        "results": results,
        "sent": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
    })


app.include_router(api)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    store_ok = False
    try:
        store_ok = await asyncio.wait_for(state_store.ping(), timeout=HEALTH_STORE_TIMEOUT_SECONDS)
    except Exception:
        store_ok = False
    return {
        "status": "healthy",
        "redis": "connected" if redis_manager.redis_client else "disconnected",
        "state": {"backend": state_store.name, "ok": bool(store_ok)},
        "webhook_queue": webhook_runtime.backend_name(),
        "platforms": {name: p.is_connected for name, p in messaging.platforms.items()},
        "ai": ai_responder.enabled,
        "timestamp": _now_iso(),
    }
