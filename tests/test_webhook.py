import asyncio
import hashlib
import hmac
import json
import types

import pytest

from clientping import main
from clientping.automation.engine import FEATURES_MESSAGE, WELCOME_MESSAGE
from clientping.messaging import MessagingError
from clientping.webhook import WebhookRuntime, workers
from clientping.webhook.router import verify_meta_signature
from clientping.webhook.workers import _decode_payload, _handle_stream_entry, telegram_polling_worker, webhook_worker


@pytest.fixture
def rt():
    return main.webhook_runtime


def _sign(secret, body):
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_verify_meta_signature():
    body = b'{"entry": []}'
    assert verify_meta_signature("s3cret", body, _sign("s3cret", body)) is True
    assert verify_meta_signature("s3cret", body, _sign("other", body)) is False
    assert verify_meta_signature("s3cret", body, "") is False
    # bare hex digest without the sha256= prefix is accepted too
    assert verify_meta_signature("s3cret", body, _sign("s3cret", body).split("=", 1)[1]) is True


def test_whatsapp_subscription_handshake(client, rt, monkeypatch):
    monkeypatch.setattr(rt, "whatsapp_verify_token", "verify-me")
    params = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"}
    res = client.get("/api/whatsapp/webhook", params=params)
    assert res.status_code == 200
    assert res.text == "1158201444"

    params["hub.verify_token"] = "nope"
    assert client.get("/api/whatsapp/webhook", params=params).status_code == 403


def test_whatsapp_webhook_signature(client, rt, graph_api, monkeypatch, make_whatsapp_payload):
    monkeypatch.setattr(rt, "meta_app_secret", "app-secret")
    body = json.dumps(make_whatsapp_payload([("2126001", "hi")], names={"2126001": "Ana"})).encode()

    bad = client.post("/api/whatsapp/webhook", content=body, headers={"X-Hub-Signature-256": _sign("wrong", body)})
    assert bad.status_code == 401
    assert graph_api.sent() == []

    ok = client.post("/api/whatsapp/webhook", content=body, headers={"X-Hub-Signature-256": _sign("app-secret", body)})
    assert ok.status_code == 200
    assert ok.json() == {"ok": True}
    assert graph_api.sent() == [("2126001", WELCOME_MESSAGE)]


def test_whatsapp_status_callbacks_are_skipped(client, graph_api):
    status_only = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.1", "status": "read"}]}}]}]}
    res = client.post("/api/whatsapp/webhook", json=status_only)
    assert res.json() == {"ok": True, "skipped": True}
    assert graph_api.requests == []

    assert client.post("/api/whatsapp/webhook", content=b"{oops").status_code == 400


def test_telegram_webhook_secret(client, rt, bot_api, monkeypatch, make_telegram_update):
    monkeypatch.setattr(rt, "telegram_secret", "tg-secret")
    update = make_telegram_update(900, "hello")

    res = client.post("/api/telegram/webhook", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": "bad"})
    assert res.status_code == 401
    assert bot_api.sent_texts() == []

    res = client.post("/api/telegram/webhook", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": "tg-secret"})
    assert res.status_code == 200
    assert bot_api.sent_texts() == [WELCOME_MESSAGE]


def test_telegram_webhook_conversation(client, bot_api, make_telegram_update):
    client.post("/api/telegram/webhook", json=make_telegram_update(901, "hi", update_id=1))
    client.post("/api/telegram/webhook", json=make_telegram_update(901, "what features do you have?", update_id=2))
    assert bot_api.sent_texts() == [WELCOME_MESSAGE, FEATURES_MESSAGE]

    contacts = client.get("/api/automation/flows", params={"action": "contacts"}).json()["data"]
    assert contacts["contacts"][0]["chat_id"] == "901"
    assert contacts["contacts"][0]["message_count"] == 2


def test_telegram_non_message_updates_are_skipped(client, bot_api):
    res = client.post("/api/telegram/webhook", json={"update_id": 5, "edited_message": {"text": "x"}})
    assert res.json() == {"ok": True, "skipped": True}
    assert client.post("/api/telegram/webhook", content=b"nope").status_code == 400
    assert bot_api.sent_texts() == []


def test_enqueue_when_not_inline(client, rt, bot_api, monkeypatch, make_telegram_update):
    monkeypatch.setattr(rt, "process_inline", False)
    monkeypatch.setattr(rt, "queue", asyncio.Queue(maxsize=1))

    first = client.post("/api/telegram/webhook", json=make_telegram_update(902, "hi"))
    assert first.json() == {"ok": True}
    assert rt.queue.qsize() == 1
    # queued, not processed: no worker is running in this test
    assert bot_api.sent_texts() == []

    status = client.get("/api/webhook/status").json()
    assert status["backend"] == "memory"
    assert status["queue_size"] == 1

    full = client.post("/api/telegram/webhook", json=make_telegram_update(903, "hi"))
    assert full.status_code == 503
    assert full.text == "Webhook queue full"


def test_enqueue_without_queue(client, rt, monkeypatch, make_telegram_update):
    monkeypatch.setattr(rt, "process_inline", False)
    monkeypatch.setattr(rt, "queue", None)
    res = client.post("/api/telegram/webhook", json=make_telegram_update(904, "hi"))
    assert res.status_code == 503


def test_decode_payload():
    envelope = {"platform": "telegram", "payload": {"update_id": 1}}
    raw = json.dumps(envelope)
    assert _decode_payload({b"payload": raw.encode()}) == (envelope, raw)
    assert _decode_payload({"payload": raw}) == (envelope, raw)
    assert _decode_payload({"payload": "[1, 2]"}) == (None, "[1, 2]")
    assert _decode_payload({"payload": "{broken"}) == (None, "{broken")
    assert _decode_payload({}) == (None, "")


class FakeStreamRedis:
    def __init__(self):
        self.attempts = {}
        self.acked = []
        self.dlq = []

    async def hincrby(self, key, field, amount):
        self.attempts[field] = self.attempts.get(field, 0) + amount
        return self.attempts[field]

    async def hdel(self, key, field):
        self.attempts.pop(field, None)
        return 1

    async def xack(self, stream, group, msg_id):
        self.acked.append(msg_id)
        return 1

    async def xadd(self, key, fields):
        self.dlq.append((key, fields))
        return "1-0"


class _Processor:
    def __init__(self, fail):
        self.fail = fail
        self.seen = []

    async def process_incoming_message(self, envelope):
        self.seen.append(envelope)
        if self.fail:
            raise RuntimeError("boom")
        return []


def _stream_runtime(processor, redis=None, **overrides):
    rt = WebhookRuntime(
        redis_manager=types.SimpleNamespace(redis_client=redis),
        processor=processor,
        messaging=None,
        vlog=lambda *a, **k: None,
        telegram_secret="",
        whatsapp_verify_token="",
        meta_app_secret="",
        use_redis_stream=True,
        stream_key="clientping:webhooks",
        stream_group="workers",
        stream_dlq_key="clientping:webhooks:dlq",
        max_attempts=2,
        claim_min_idle_ms=1000,
        queue_maxsize=10,
        enqueue_timeout_seconds=1.0,
        workers=1,
        processing_timeout_seconds=5.0,
    )
    for key, value in overrides.items():
        setattr(rt, key, value)
    return rt


def test_stream_entry_success_is_acked():
    r = FakeStreamRedis()
    proc = _Processor(fail=False)
    fields = {b"payload": json.dumps({"platform": "telegram", "payload": {}}).encode()}
    asyncio.run(_handle_stream_entry(_stream_runtime(proc), r, 1, "1-1", fields))
    assert r.acked == ["1-1"]
    assert len(proc.seen) == 1


def test_stream_entry_failures_go_to_dlq():
    r = FakeStreamRedis()
    rt = _stream_runtime(_Processor(fail=True))
    fields = {"payload": json.dumps({"platform": "whatsapp", "payload": {}})}

    asyncio.run(_handle_stream_entry(rt, r, 1, "2-1", fields))
    # first failure stays pending for a retry
    assert r.acked == []
    assert r.attempts == {"2-1": 1}

    asyncio.run(_handle_stream_entry(rt, r, 1, "2-1", fields))
    assert r.acked == ["2-1"]
    assert r.attempts == {}
    key, parked = r.dlq[0]
    assert key == "clientping:webhooks:dlq"
    assert parked["id"] == "2-1"
    assert parked["error"] == "boom"


def test_undecodable_stream_entry_is_not_processed():
    r = FakeStreamRedis()
    proc = _Processor(fail=False)
    rt = _stream_runtime(proc)
    rt.max_attempts = 1
    asyncio.run(_handle_stream_entry(rt, r, 1, "3-1", {"payload": "not json"}))
    assert proc.seen == []
    assert r.dlq[0][1]["error"] == "bad payload"
    assert r.acked == ["3-1"]


class FlakyStreamRedis(FakeStreamRedis):
    """Stream reads fail with the given errors first, then deliver queued entries once."""

    def __init__(self, entries, errors=()):
        super().__init__()
        self.entries = list(entries)
        self.errors = list(errors)
        self.reads = 0
        self.groups = []

    async def xautoclaim(self, *args, **kwargs):
        return ["0-0", [], []]

    async def xgroup_create(self, stream, group, id="0-0", mkstream=False):
        self.groups.append(group)
        return True

    async def xreadgroup(self, group, consumer, streams, count, block):
        self.reads += 1
        if self.errors:
            raise self.errors.pop(0)
        if self.entries:
            batch, self.entries = self.entries, []
            return [[next(iter(streams)), batch]]
        await asyncio.sleep(0.01)
        return []


async def _run_until(coro, done, timeout=2.0):
    task = asyncio.create_task(coro)
    try:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not done() and loop.time() < deadline:
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def _entry(msg_id, chat_id):
    envelope = {"platform": "telegram", "payload": {"update_id": chat_id}}
    return msg_id, {"payload": json.dumps(envelope)}


def test_worker_keeps_reading_stream_after_redis_error(monkeypatch):
    monkeypatch.setattr(workers, "STREAM_RETRY_SECONDS", 0.01)
    r = FlakyStreamRedis([_entry("5-1", 1)], errors=[ConnectionError("connection reset")])
    proc = _Processor(fail=False)
    rt = _stream_runtime(proc, redis=r)

    async def scenario():
        rt.queue = asyncio.Queue()
        await _run_until(webhook_worker(rt, 1), lambda: r.acked)

    asyncio.run(scenario())
    assert r.reads >= 2
    assert proc.seen == [{"platform": "telegram", "payload": {"update_id": 1}}]
    assert r.acked == ["5-1"]


def test_worker_recreates_missing_stream_group(monkeypatch):
    monkeypatch.setattr(workers, "STREAM_RETRY_SECONDS", 0.01)
    r = FlakyStreamRedis([_entry("6-1", 2)], errors=[Exception("NOGROUP No such key 'clientping:webhooks'")])
    proc = _Processor(fail=False)
    rt = _stream_runtime(proc, redis=r)

    asyncio.run(_run_until(webhook_worker(rt, 1), lambda: r.acked))
    assert r.groups == ["workers"]
    assert r.acked == ["6-1"]


def test_worker_drains_memory_queue_left_from_redis_outage():
    r = FlakyStreamRedis([])
    proc = _Processor(fail=False)
    rt = _stream_runtime(proc, redis=r)

    async def scenario():
        rt.queue = asyncio.Queue()
        rt.queue.put_nowait({"platform": "telegram", "payload": {"update_id": 3}})
        await _run_until(webhook_worker(rt, 1), lambda: proc.seen)
        return rt.queue.qsize()

    assert asyncio.run(scenario()) == 0
    assert proc.seen == [{"platform": "telegram", "payload": {"update_id": 3}}]


def test_memory_worker_survives_processing_failures(monkeypatch):
    monkeypatch.setattr(workers, "QUEUE_POLL_SECONDS", 0.01)
    proc = _Processor(fail=True)
    rt = _stream_runtime(proc, use_redis_stream=False)

    async def scenario():
        rt.queue = asyncio.Queue()
        rt.queue.put_nowait({"platform": "telegram", "payload": {"update_id": 1}})
        rt.queue.put_nowait({"platform": "telegram", "payload": {"update_id": 2}})
        await _run_until(webhook_worker(rt, 1), lambda: len(proc.seen) == 2)
        # both items were marked done even though processing raised
        await asyncio.wait_for(rt.queue.join(), timeout=1)

    asyncio.run(scenario())
    assert [e["payload"]["update_id"] for e in proc.seen] == [1, 2]


class FakePollingTelegram:
    def __init__(self, batches, errors=()):
        self.batches = list(batches)
        self.errors = list(errors)
        self.offsets = []
        self.webhook_removed = False

    async def remove_webhook(self):
        self.webhook_removed = True

    async def get_updates(self, offset=None, timeout=25):
        self.offsets.append(offset)
        if self.errors:
            raise self.errors.pop(0)
        if self.batches:
            return self.batches.pop(0)
        await asyncio.sleep(0.01)
        return []


def _polling_runtime(proc, telegram, **overrides):
    overrides.setdefault("process_inline", True)
    return _stream_runtime(
        proc,
        messaging=types.SimpleNamespace(telegram=lambda: telegram),
        use_redis_stream=False,
        **overrides,
    )


def test_polling_advances_offset_and_skips_non_messages(make_telegram_update):
    tg = FakePollingTelegram([[
        make_telegram_update(700, "hi", update_id=10),
        {"update_id": 11, "edited_message": {"text": "x"}},
        {"update_id": 12, "callback_query": {"id": "cb", "data": "yes"}},
    ]])
    proc = _Processor(fail=False)
    rt = _polling_runtime(proc, tg)

    asyncio.run(_run_until(telegram_polling_worker(rt, poll_timeout=1), lambda: len(tg.offsets) >= 2))
    assert tg.webhook_removed is True
    assert tg.offsets[:2] == [None, 13]
    assert rt.state.polling_offset == 13
    assert [e["payload"]["update_id"] for e in proc.seen] == [10, 12]
    assert all(e["platform"] == "telegram" for e in proc.seen)


def test_polling_drops_updates_when_queue_is_full(make_telegram_update):
    tg = FakePollingTelegram([[
        make_telegram_update(701, "one", update_id=20),
        make_telegram_update(702, "two", update_id=21),
    ]])
    proc = _Processor(fail=False)
    rt = _polling_runtime(proc, tg, process_inline=False)

    async def scenario():
        rt.queue = asyncio.Queue(maxsize=1)
        await _run_until(telegram_polling_worker(rt, poll_timeout=1), lambda: len(tg.offsets) >= 2)
        return [rt.queue.get_nowait() for _ in range(rt.queue.qsize())]

    queued = asyncio.run(scenario())
    assert [e["payload"]["update_id"] for e in queued] == [20]
    # the dropped update is not fetched again
    assert rt.state.polling_offset == 22
    assert proc.seen == []


def test_polling_retries_after_get_updates_failure(monkeypatch, make_telegram_update):
    monkeypatch.setattr(workers, "POLL_RETRY_SECONDS", 0.01)
    tg = FakePollingTelegram(
        [[make_telegram_update(703, "hi", update_id=30)]],
        errors=[MessagingError("Bad Gateway", platform="telegram", status_code=502)],
    )
    proc = _Processor(fail=False)
    rt = _polling_runtime(proc, tg)

    asyncio.run(_run_until(telegram_polling_worker(rt, poll_timeout=1), lambda: proc.seen))
    assert tg.offsets[:2] == [None, None]
    assert proc.seen[0]["payload"]["update_id"] == 30
