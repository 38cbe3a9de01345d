import asyncio
import json
import os

import httpx
import pytest

# Tests focus on automation logic, not authentication; keep auth disabled here.
os.environ.setdefault("DISABLE_AUTH", "1")
# Never talk to real providers / shared state from tests.
os.environ["STATE_BACKEND"] = "memory"
os.environ["WEBHOOK_PROCESS_INLINE"] = "1"
os.environ["TELEGRAM_USE_POLLING"] = "0"
os.environ["AUTO_AI_REPLY"] = "0"
for _k in (
    "REDIS_URL",
    "DATABASE_URL",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_WEBHOOK_URL",
    "TELEGRAM_WEBHOOK_SECRET",
    "WHATSAPP_ACCESS_TOKEN",
    "WHATSAPP_PHONE_NUMBER_ID",
    "META_APP_SECRET",
    "OPENAI_API_KEY",
):
    os.environ[_k] = ""

from clientping import main
from clientping.ai_responder import AIResponder
from clientping.automation import AutomationEngine, ContactManager, MemoryStore
from clientping.messaging import MessagingManager, TelegramPlatform, WhatsAppPlatform
from clientping.processor import InboundProcessor


class FakeBotApi:
    """Records Telegram Bot API calls and answers like Telegram would."""

    def __init__(self):
        self.calls = []
        self.fail_methods = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        self.calls.append((method, body))
        if method in self.fail_methods:
            return httpx.Response(400, json={"ok": False, "error_code": 400, "description": "Bad Request: chat not found"})
        bot = {"id": 42, "is_bot": True, "first_name": "Ping", "username": "ping_bot"}
        if method == "getMe":
            result = bot
        elif method in ("sendMessage", "sendPhoto"):
            result = {
                "message_id": len(self.calls),
                "date": 1700000000,
                "chat": {"id": body.get("chat_id")},
                "from": bot,
                "text": body.get("text"),
            }
        elif method == "getWebhookInfo":
            result = {"url": "https://example.test/api/telegram/webhook", "pending_update_count": 0}
        elif method == "getUpdates":
            result = []
        else:
            result = True
        return httpx.Response(200, json={"ok": True, "result": result})

    def sent_texts(self):
        return [b.get("text") for m, b in self.calls if m == "sendMessage"]


class FakeGraphApi:
    """Records WhatsApp Cloud API sends."""

    def __init__(self):
        self.requests = []
        self.fail_to = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}") if request.content else {}
        self.requests.append((request.method, str(request.url), body))
        if body.get("to") in self.fail_to:
            return httpx.Response(400, json={"error": {"message": "Invalid parameter"}})
        if request.method == "GET":
            return httpx.Response(200, json={"display_phone_number": "+1 555 0100", "verified_name": "ClientPing"})
        return httpx.Response(200, json={"messages": [{"id": f"wamid.{len(self.requests)}"}]})

    def sent(self):
        return [(b["to"], b["text"]["body"]) for m, _u, b in self.requests if m == "POST"]


def telegram_update(chat_id, text, *, first_name="Ana", update_id=1):
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "date": 1700000000,
            "chat": {"id": chat_id, "type": "private"},
            "from": {"id": chat_id, "is_bot": False, "first_name": first_name},
            "text": text,
        },
    }


def whatsapp_payload(messages, *, names=None):
    names = names or {}
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "WABA",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"phone_number_id": "PNID"},
                    "contacts": [{"wa_id": w, "profile": {"name": n}} for w, n in names.items()],
                    "messages": [
                        {"from": frm, "id": f"wamid.in{i}", "timestamp": "1700000000", "type": "text", "text": {"body": body}}
                        for i, (frm, body) in enumerate(messages)
                    ],
                },
            }],
        }],
    }


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def contacts(store):
    cm = ContactManager(store)
    asyncio.run(cm.initialize())
    return cm


@pytest.fixture
def engine(store, contacts, fake_sleep):
    eng = AutomationEngine(store, contacts, sleep=fake_sleep)
    asyncio.run(eng.initialize())
    return eng


@pytest.fixture
def bot_api():
    return FakeBotApi()


@pytest.fixture
def graph_api():
    return FakeGraphApi()


@pytest.fixture
def telegram(bot_api):
    return TelegramPlatform("123456:TEST-token", transport=httpx.MockTransport(bot_api))


@pytest.fixture
def whatsapp(graph_api, fake_sleep):
    return WhatsAppPlatform(
        "EAAG-test",
        "PNID",
        verify_token="verify-me",
        sleep=fake_sleep,
        transport=httpx.MockTransport(graph_api),
    )


@pytest.fixture
def processor(engine, contacts, telegram, whatsapp):
    return InboundProcessor(
        engine,
        contacts,
        MessagingManager([telegram, whatsapp]),
        AIResponder(""),
        fallback_reply="Sorry, try again.",
    )


@pytest.fixture
def make_telegram_update():
    return telegram_update


@pytest.fixture
def make_whatsapp_payload():
    return whatsapp_payload


@pytest.fixture
def client(telegram, whatsapp, fake_sleep, monkeypatch):
    from fastapi.testclient import TestClient

    monkeypatch.setattr(main.automation_engine, "_sleep", fake_sleep)
    monkeypatch.setattr(main.messaging, "platforms", {})
    monkeypatch.setattr(main.messaging, "default_platform", None)
    main.messaging.register(telegram)
    main.messaging.register(whatsapp)
    with TestClient(main.app) as c:
        yield c
