from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from airender.errors import StoreUnavailable

log = logging.getLogger(__name__)

MEMO_BACKEND = os.getenv("MEMO_BACKEND", "redis").strip().lower() or "redis"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
MEMO_KEY_PREFIX = os.getenv("MEMO_KEY_PREFIX", "airender").strip() or "airender"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        log.warning("memo.config: ignoring non-integer %s=%r", name, os.getenv(name))
        return default


MEMO_TTL_SECONDS = _env_int("MEMO_TTL_SECONDS", 0)  # 0 = never expire
MEMO_WRITE_REPLICAS = _env_int("MEMO_WRITE_REPLICAS", 0)
MEMO_WRITE_TIMEOUT_MS = _env_int("MEMO_WRITE_TIMEOUT_MS", 500)


# KEYS[1] record hash, KEYS[2] variation set.
# ARGV: mode, ttl, variation member ("" to skip), n set pairs, set pairs..., insert-only pairs...
_UPSERT_SCRIPT = """
local before = redis.call('HGETALL', KEYS[1])
local last_set = 4 + 2 * tonumber(ARGV[4])
local i = 5
while i <= last_set do
  redis.call('HSET', KEYS[1], ARGV[i], ARGV[i + 1])
  i = i + 2
end
while i < #ARGV do
  redis.call('HSETNX', KEYS[1], ARGV[i], ARGV[i + 1])
  i = i + 2
end
if ARGV[3] ~= '' then
  redis.call('SADD', KEYS[2], ARGV[3])
end
local ttl = tonumber(ARGV[2])
if ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
  if ARGV[3] ~= '' then
    redis.call('EXPIRE', KEYS[2], ttl)
  end
end
if ARGV[1] == 'after' then
  return redis.call('HGETALL', KEYS[1])
end
return before
"""


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _flatten(fields: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for name, value in fields.items():
        out.extend([name, _encode(value)])
    return out


def _decode_pairs(raw: Any) -> Optional[Dict[str, Any]]:
    """HGETALL result (flat list from Lua, dict from the client) -> record or None."""
    if not raw:
        return None
    if isinstance(raw, dict):
        items = list(raw.items())
    else:
        items = [(raw[i], raw[i + 1]) for i in range(0, len(raw) - 1, 2)]
    record: Dict[str, Any] = {}
    for name, value in items:
        if isinstance(name, bytes):
            name = name.decode("utf-8")
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            record[name] = json.loads(value)
        except (TypeError, ValueError):
            record[name] = value
    return record


class MemoStore:
    """Key-addressed completion records with atomic reserve/finalize upserts.

    ``reserve`` returns the record as it was *before* the call (None for a
    fresh reservation); ``finalize`` returns it *after* the call. Both set the
    given fields and create the record when it is missing.
    """

    async def reserve(
        self,
        request_hash: str,
        fields: Dict[str, Any],
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def finalize(self, request_hash: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def get(self, request_hash: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def variations(self, prompt_hash: str, limit: int = 10) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryMemoStore(MemoStore):
    """In-process store for development and tests. Mirrors RedisMemoStore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._variants: Dict[str, List[str]] = {}

    def _upsert(
        self,
        request_hash: str,
        fields: Dict[str, Any],
        on_insert: Optional[Dict[str, Any]],
    ) -> tuple:
        # Values go through JSON so callers never share state with the store
        fields = json.loads(_encode(fields))
        on_insert = json.loads(_encode(on_insert or {}))
        with self._lock:
            current = self._records.get(request_hash)
            before = json.loads(_encode(current)) if current is not None else None
            doc = dict(current or {})
            doc.update(fields)
            for name, value in on_insert.items():
                doc.setdefault(name, value)
            self._records[request_hash] = doc
            prompt_hash = fields.get("promptHash")
            if prompt_hash:
                members = self._variants.setdefault(prompt_hash, [])
                if request_hash not in members:
                    members.append(request_hash)
            after = json.loads(_encode(doc))
        return before, after

    async def reserve(self, request_hash, fields, on_insert=None):
        before, _ = self._upsert(request_hash, fields, on_insert)
        return before

    async def finalize(self, request_hash, fields):
        _, after = self._upsert(request_hash, fields, None)
        return after

    async def get(self, request_hash):
        with self._lock:
            current = self._records.get(request_hash)
            return json.loads(_encode(current)) if current is not None else None

    async def variations(self, prompt_hash, limit=10):
        with self._lock:
            members = sorted(self._variants.get(prompt_hash, []))
            rows = [self._records[m] for m in members if m in self._records]
            return json.loads(_encode(rows[: max(0, limit)]))


class RedisMemoStore(MemoStore):
    """
    Redis-backed store. Each record is a hash whose field values are JSON;
    reserve/finalize run one Lua script so the pre-image read and the write
    are a single atomic step per key.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Any] = None,
        prefix: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        write_replicas: Optional[int] = None,
        write_timeout_ms: Optional[int] = None,
    ) -> None:
        self.redis_url = (redis_url or REDIS_URL).strip() or REDIS_URL
        self.prefix = (prefix or MEMO_KEY_PREFIX).strip() or MEMO_KEY_PREFIX
        self.ttl_seconds = int(MEMO_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.write_replicas = int(MEMO_WRITE_REPLICAS if write_replicas is None else write_replicas)
        self.write_timeout_ms = int(MEMO_WRITE_TIMEOUT_MS if write_timeout_ms is None else write_timeout_ms)
        # Connection is lazy: this does not hit the network until the first command.
        self._client = client if client is not None else aioredis.from_url(self.redis_url, decode_responses=True)
        self._upsert_script = self._client.register_script(_UPSERT_SCRIPT)

    def _record_key(self, request_hash: str) -> str:
        return f"{self.prefix}:completion:{request_hash}"

    def _variants_key(self, prompt_hash: str) -> str:
        return f"{self.prefix}:variants:{prompt_hash}"

    async def _wait_for_replicas(self) -> None:
        if self.write_replicas <= 0:
            return
        acked = await self._client.wait(self.write_replicas, self.write_timeout_ms)
        if int(acked) < self.write_replicas:
            log.warning(
                "memo.write: only %s/%d replicas acknowledged within %dms",
                acked,
                self.write_replicas,
                self.write_timeout_ms,
            )

    async def _upsert(
        self,
        mode: str,
        request_hash: str,
        fields: Dict[str, Any],
        on_insert: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        prompt_hash = fields.get("promptHash") or ""
        args: List[Any] = [mode, self.ttl_seconds, request_hash if prompt_hash else "", len(fields)]
        args.extend(_flatten(fields))
        args.extend(_flatten(on_insert or {}))
        keys = [self._record_key(request_hash), self._variants_key(prompt_hash)]
        try:
            raw = await self._upsert_script(keys=keys, args=args)
            await self._wait_for_replicas()
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"memo store upsert failed hash={request_hash[:12]}: {exc}") from exc
        return _decode_pairs(raw)

    async def reserve(self, request_hash, fields, on_insert=None):
        return await self._upsert("before", request_hash, fields, on_insert)

    async def finalize(self, request_hash, fields):
        return await self._upsert("after", request_hash, fields) or {}

    async def get(self, request_hash):
        try:
            raw = await self._client.hgetall(self._record_key(request_hash))
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"memo store read failed hash={request_hash[:12]}: {exc}") from exc
        return _decode_pairs(raw)

    async def variations(self, prompt_hash, limit=10):
        try:
            members = sorted(await self._client.smembers(self._variants_key(prompt_hash)))
            members = members[: max(0, limit)]
            if not members:
                return []
            async with self._client.pipeline(transaction=False) as pipe:
                for member in members:
                    pipe.hgetall(self._record_key(member))
                rows = await pipe.execute()
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"memo store variation lookup failed: {exc}") from exc
        records = [_decode_pairs(row) for row in rows]
        return [r for r in records if r]

    async def close(self) -> None:
        await self._client.aclose()


_default_store: Optional[MemoStore] = None


def get_store() -> MemoStore:
    """Process-wide store, built on first use."""
    global _default_store
    if _default_store is None:
        if MEMO_BACKEND == "memory":
            _default_store = MemoryMemoStore()
        else:
            _default_store = RedisMemoStore()
        log.info("memo.store: using backend=%s", MEMO_BACKEND)
    return _default_store


def set_store(store: Optional[MemoStore]) -> None:
    global _default_store
    _default_store = store


async def close_store() -> None:
    global _default_store
    if _default_store is not None:
        await _default_store.close()
        _default_store = None
