"""Externalised state for the automation engine and contact manager.

Values are JSON-serialisable dicts grouped by namespace (``flows``, ``contexts``,
``contacts``, ``segments``). Three backends:

- :class:`MemoryStore`   per-process dicts, lost on restart (dev/tests)
- :class:`RedisStore`    one Redis hash per namespace, shared across instances
- :class:`DatabaseStore` ``kv_state`` table on SQLite (aiosqlite) or Postgres (asyncpg)
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import aiosqlite
import asyncpg

log = logging.getLogger(__name__)


class StateStore:
    """Async namespaced key/value store."""

    name = "abstract"

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        raise NotImplementedError

    async def put(self, namespace: str, key: str, value: dict) -> None:
        raise NotImplementedError

    async def delete(self, namespace: str, key: str) -> bool:
        raise NotImplementedError

    async def values(self, namespace: str) -> List[dict]:
        raise NotImplementedError

    async def count(self, namespace: str) -> int:
        return len(await self.values(namespace))

    # Increments are applied by the backend itself (HINCRBY, SQL upsert).
    async def incr(self, namespace: str, key: str, field: str, amount: int = 1, *, stamp: Optional[str] = None) -> None:
        raise NotImplementedError

    async def counters(self, namespace: str, keys: List[str]) -> Dict[str, dict]:
        """Return ``{key: {field: int, ..., "stamp": str}}`` for the keys that have counters."""
        raise NotImplementedError

    async def clear_counters(self, namespace: str, key: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryStore(StateStore):
    name = "memory"

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, str]] = {}
        self._counters: Dict[str, Dict[str, dict]] = {}

    # Values are stored serialised so callers never share mutable state with the store.
    async def get(self, namespace: str, key: str) -> Optional[dict]:
        raw = self._data.get(namespace, {}).get(str(key))
        return json.loads(raw) if raw is not None else None

    async def put(self, namespace: str, key: str, value: dict) -> None:
        self._data.setdefault(namespace, {})[str(key)] = json.dumps(value)

    async def delete(self, namespace: str, key: str) -> bool:
        return self._data.get(namespace, {}).pop(str(key), None) is not None

    async def values(self, namespace: str) -> List[dict]:
        return [json.loads(raw) for raw in self._data.get(namespace, {}).values()]

    async def count(self, namespace: str) -> int:
        return len(self._data.get(namespace, {}))

    async def incr(self, namespace: str, key: str, field: str, amount: int = 1, *, stamp: Optional[str] = None) -> None:
        entry = self._counters.setdefault(namespace, {}).setdefault(str(key), {})
        entry[field] = int(entry.get(field, 0)) + int(amount)
        if stamp:
            entry["stamp"] = stamp

    async def counters(self, namespace: str, keys: List[str]) -> Dict[str, dict]:
        stored = self._counters.get(namespace, {})
        return {str(k): dict(stored[str(k)]) for k in keys if str(k) in stored}

    async def clear_counters(self, namespace: str, key: str) -> None:
        self._counters.get(namespace, {}).pop(str(key), None)


def _decode(raw: Any) -> str:
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode("utf-8", "ignore")
    return str(raw)


class RedisStore(StateStore):
    name = "redis"

    def __init__(self, redis_client, prefix: str = "clientping") -> None:
        self.redis_client = redis_client
        self.prefix = prefix

    def _key(self, namespace: str) -> str:
        return f"{self.prefix}:{namespace}"

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        raw = await self.redis_client.hget(self._key(namespace), str(key))
        if raw is None:
            return None
        return json.loads(_decode(raw))

    async def put(self, namespace: str, key: str, value: dict) -> None:
        await self.redis_client.hset(self._key(namespace), str(key), json.dumps(value))

    async def delete(self, namespace: str, key: str) -> bool:
        removed = await self.redis_client.hdel(self._key(namespace), str(key))
        return bool(removed)

    async def values(self, namespace: str) -> List[dict]:
        raw = await self.redis_client.hgetall(self._key(namespace))
        out: List[dict] = []
        for _k, v in (raw or {}).items():
            try:
                out.append(json.loads(_decode(v)))
            except ValueError:
                log.warning("Skipping undecodable %s entry in %s", namespace, self._key(namespace))
        return out

    async def count(self, namespace: str) -> int:
        return int(await self.redis_client.hlen(self._key(namespace)))

    # One hash per counted key, bumped with HINCRBY.
    def _counter_key(self, namespace: str, key: str) -> str:
        return f"{self.prefix}:{namespace}:{key}"

    async def incr(self, namespace: str, key: str, field: str, amount: int = 1, *, stamp: Optional[str] = None) -> None:
        ckey = self._counter_key(namespace, key)
        await self.redis_client.hincrby(ckey, field, int(amount))
        if stamp:
            await self.redis_client.hset(ckey, "stamp", stamp)

    async def counters(self, namespace: str, keys: List[str]) -> Dict[str, dict]:
        out: Dict[str, dict] = {}
        for key in keys:
            raw = await self.redis_client.hgetall(self._counter_key(namespace, key))
            if not raw:
                continue
            entry: dict = {}
            for f, v in raw.items():
                name = _decode(f)
                entry[name] = _decode(v) if name == "stamp" else int(_decode(v))
            out[str(key)] = entry
        return out

    async def clear_counters(self, namespace: str, key: str) -> None:
        await self.redis_client.delete(self._counter_key(namespace, key))

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except Exception:
            return False


def _normalize_pg_url(db_url: Optional[str]) -> Optional[str]:
    # Some platforms/tools provide SQLAlchemy-style URLs like "postgresql+asyncpg://..."
    # which asyncpg does NOT accept.
    raw_url = (db_url or "").strip() or None
    if not raw_url:
        return None
    for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
        if raw_url.startswith(prefix):
            raw_url = raw_url.replace(prefix, "postgresql://", 1)
    scheme = (urlparse(raw_url).scheme or "").lower()
    return raw_url if scheme in ("postgresql", "postgres") else None


class DatabaseStore(StateStore):
    """``kv_state`` table on SQLite or Postgres (e.g. the Supabase database)."""

    def __init__(
        self,
        db_path: str,
        db_url: Optional[str] = None,
        *,
        pool_min: int = 1,
        pool_max: int = 5,
        connect_timeout: float = 10.0,
        busy_timeout_ms: int = 3000,
    ) -> None:
        self.db_url = _normalize_pg_url(db_url)
        self.db_path = db_path
        self.use_postgres = bool(self.db_url)
        self.name = "postgres" if self.use_postgres else "sqlite"
        self.pool_min = pool_min
        self.pool_max = pool_max
        self.connect_timeout = connect_timeout
        self.busy_timeout_ms = busy_timeout_ms
        if not self.use_postgres:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pool: Optional[asyncpg.pool.Pool] = None
        self._pool_lock = asyncio.Lock()
        self._seq = 0

    async def _get_pool(self):
        if self._pool:
            return self._pool
        async with self._pool_lock:
            if self._pool:
                return self._pool
            # PgBouncer (Supabase pooler) + prepared statements don't mix in transaction pooling
            self._pool = await asyncpg.create_pool(
                self.db_url,
                min_size=self.pool_min,
                max_size=self.pool_max,
                timeout=float(self.connect_timeout),
                statement_cache_size=0,
                max_inactive_connection_lifetime=60.0,
            )
        return self._pool

    def _convert(self, query: str) -> str:
        """Convert SQLite style placeholders to asyncpg numbered ones."""
        if not self.use_postgres:
            return query

        idx = 1

        def repl(match):
            nonlocal idx
            rep = f"${idx}"
            idx += 1
            return rep

        return re.sub(r"\?", repl, query)

    @asynccontextmanager
    async def _conn(self):
        if self.use_postgres:
            pool = await self._get_pool()
            async with pool.acquire() as conn:
                yield conn
            return
        # Keep lock waits bounded so requests don't hang indefinitely.
        timeout_s = max(0.1, float(self.busy_timeout_ms) / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s) as db:
            await db.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            yield db

    async def init_db(self) -> None:
        async with self._conn() as db:
            script = """
                CREATE TABLE IF NOT EXISTS kv_state (
                    namespace  TEXT NOT NULL,
                    key        TEXT NOT NULL,
                    value      TEXT NOT NULL,
                    seq        BIGINT NOT NULL DEFAULT 0,
                    updated_at TEXT,
                    PRIMARY KEY (namespace, key)
                )
            """
            await db.execute(script)
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_counters (
                    namespace TEXT NOT NULL,
                    key       TEXT NOT NULL,
                    field     TEXT NOT NULL,
                    value     BIGINT NOT NULL DEFAULT 0,
                    stamp     TEXT,
                    PRIMARY KEY (namespace, key, field)
                )
                """
            )
            if not self.use_postgres:
                await db.commit()

    def _next_seq(self) -> int:
        # Insertion order for values(); monotonic per process, ties fall back to key order.
        self._seq += 1
        return int(time.time() * 1000) * 1000 + (self._seq % 1000)

    async def get(self, namespace: str, key: str) -> Optional[dict]:
        async with self._conn() as db:
            query = self._convert("SELECT value FROM kv_state WHERE namespace = ? AND key = ?")
            params = (namespace, str(key))
            if self.use_postgres:
                row = await db.fetchrow(query, *params)
            else:
                cur = await db.execute(query, params)
                row = await cur.fetchone()
            return json.loads(row[0]) if row else None

    async def put(self, namespace: str, key: str, value: dict) -> None:
        data = json.dumps(value)
        now = datetime.now(timezone.utc).isoformat()
        async with self._conn() as db:
            query = self._convert(
                """
                INSERT INTO kv_state (namespace, key, value, seq, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET value=EXCLUDED.value, updated_at=EXCLUDED.updated_at
                """
            )
            params = (namespace, str(key), data, self._next_seq(), now)
            if self.use_postgres:
                await db.execute(query, *params)
            else:
                await db.execute(query, params)
                await db.commit()

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._conn() as db:
            query = self._convert("DELETE FROM kv_state WHERE namespace = ? AND key = ?")
            params = (namespace, str(key))
            if self.use_postgres:
                status = await db.execute(query, *params)
                # asyncpg returns e.g. "DELETE 1"
                return str(status).strip().endswith(" 1")
            cur = await db.execute(query, params)
            await db.commit()
            return (cur.rowcount or 0) > 0

    async def values(self, namespace: str) -> List[dict]:
        async with self._conn() as db:
            query = self._convert("SELECT value FROM kv_state WHERE namespace = ? ORDER BY seq, key")
            if self.use_postgres:
                rows = await db.fetch(query, namespace)
            else:
                cur = await db.execute(query, (namespace,))
                rows = await cur.fetchall()
            return [json.loads(r[0]) for r in rows]

    async def incr(self, namespace: str, key: str, field: str, amount: int = 1, *, stamp: Optional[str] = None) -> None:
        async with self._conn() as db:
            query = self._convert(
                """
                INSERT INTO kv_counters (namespace, key, field, value, stamp)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(namespace, key, field) DO UPDATE
                  SET value = kv_counters.value + EXCLUDED.value,
                      stamp = COALESCE(EXCLUDED.stamp, kv_counters.stamp)
                """
            )
            params = (namespace, str(key), field, int(amount), stamp)
            if self.use_postgres:
                await db.execute(query, *params)
            else:
                await db.execute(query, params)
                await db.commit()

    async def counters(self, namespace: str, keys: List[str]) -> Dict[str, dict]:
        wanted = {str(k) for k in keys}
        async with self._conn() as db:
            query = self._convert("SELECT key, field, value, stamp FROM kv_counters WHERE namespace = ?")
            if self.use_postgres:
                rows = await db.fetch(query, namespace)
            else:
                cur = await db.execute(query, (namespace,))
                rows = await cur.fetchall()
        out: Dict[str, dict] = {}
        for key, field, value, stamp in rows:
            if key not in wanted:
                continue
            entry = out.setdefault(key, {})
            entry[field] = int(value)
            if stamp and stamp > entry.get("stamp", ""):
                entry["stamp"] = stamp
        return out

    async def clear_counters(self, namespace: str, key: str) -> None:
        async with self._conn() as db:
            query = self._convert("DELETE FROM kv_counters WHERE namespace = ? AND key = ?")
            params = (namespace, str(key))
            if self.use_postgres:
                await db.execute(query, *params)
            else:
                await db.execute(query, params)
                await db.commit()

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            async with self._conn() as db:
                if self.use_postgres:
                    row = await db.fetchrow("SELECT 1 AS ok")
                    return bool(row[0]) if row else False
                cur = await db.execute("SELECT 1")
                row = await cur.fetchone()
                return bool(row[0]) if row else False
        except Exception:
            return False

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None


def build_state_store(
    backend: str,
    *,
    redis_client=None,
    db_path: Optional[str] = None,
    db_url: Optional[str] = None,
    **db_kwargs,
) -> StateStore:
    """Pick a store from configuration. Redis falls back to memory when not connected."""
    b = (backend or "memory").strip().lower()
    if b == "redis":
        if redis_client is None:
            log.warning("STATE_BACKEND=redis but Redis is not connected; using in-memory state")
            return MemoryStore()
        return RedisStore(redis_client)
    if b in ("db", "sqlite", "postgres", "database"):
        return DatabaseStore(db_path or "clientping_state.db", db_url, **db_kwargs)
    if b != "memory":
        log.warning("Unknown STATE_BACKEND=%s; using in-memory state", backend)
    return MemoryStore()
