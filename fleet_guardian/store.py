"""
Live state store shared by the ingestion server and the monitor.

Two primitives cover everything the service keeps between requests:
hashes of JSON documents (vehicle records, last-known snapshot) and
capped lists (alert logs). The in-memory store is the default; Redis is
used when REDIS_URL is set so several processes can share the data.
"""
import asyncio
import copy
import functools
import json
from collections import defaultdict
from typing import Dict, List, Optional, Protocol

import redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from fleet_guardian.logging_config import get_logger

logger = get_logger("store", "store.log")

VEHICLES_KEY = "fleet:vehicles"
SNAPSHOT_KEY = "fleet:snapshot"
SERVER_ALERTS_KEY = "alerts:server"
LOCAL_ALERTS_KEY = "alerts:local"


class Store(Protocol):
    async def put(self, name: str, key: str, doc: dict) -> None: ...
    async def get_all(self, name: str) -> Dict[str, dict]: ...
    async def count(self, name: str) -> int: ...
    async def replace(self, name: str, mapping: Dict[str, dict]) -> None: ...
    async def append_capped(self, name: str, docs: List[dict], cap: int) -> int: ...
    async def tail(self, name: str, limit: Optional[int] = None) -> List[dict]: ...
    async def length(self, name: str) -> int: ...


# ---------- In-process ----------
class MemoryStore:
    def __init__(self):
        self._hashes: Dict[str, Dict[str, dict]] = defaultdict(dict)
        self._lists: Dict[str, List[dict]] = defaultdict(list)

    async def put(self, name, key, doc):
        self._hashes[name][key] = copy.deepcopy(doc)

    async def get_all(self, name):
        return copy.deepcopy(self._hashes.get(name, {}))

    async def count(self, name):
        return len(self._hashes.get(name, {}))

    async def replace(self, name, mapping):
        self._hashes[name] = copy.deepcopy(dict(mapping))

    async def append_capped(self, name, docs, cap):
        items = self._lists[name]
        items.extend(copy.deepcopy(docs))
        if len(items) > cap:
            del items[:len(items) - cap]
        return len(items)

    async def tail(self, name, limit=None):
        items = self._lists.get(name, [])
        if limit is None:
            return copy.deepcopy(items)
        if limit <= 0:
            return []
        return copy.deepcopy(items[-limit:])

    async def length(self, name):
        return len(self._lists.get(name, []))


# ---------- Redis ----------
_redis_retry = retry(
    wait=wait_exponential_jitter(initial=0.5, max=5),
    stop=stop_after_attempt(3),
    retry=retry_if_exception_type((redis.exceptions.ConnectionError, redis.exceptions.TimeoutError)),
    reraise=True,
)


class RedisStore:
    """Blocking redis client driven through the executor so the event loop never waits on it."""

    def __init__(self, client):
        self.r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.get_running_loop().run_in_executor(
            None, functools.partial(fn, *args, **kwargs)
        )

    @_redis_retry
    async def put(self, name, key, doc):
        await self._run(self.r.hset, name, key, json.dumps(doc, ensure_ascii=False))

    async def get_all(self, name):
        raw = await self._run(self.r.hgetall, name)
        return {k: json.loads(v) for k, v in (raw or {}).items()}

    async def count(self, name):
        return int(await self._run(self.r.hlen, name))

    @_redis_retry
    async def replace(self, name, mapping):
        def _replace():
            pipe = self.r.pipeline()
            pipe.delete(name)
            if mapping:
                pipe.hset(name, mapping={k: json.dumps(v, ensure_ascii=False) for k, v in mapping.items()})
            pipe.execute()

        await self._run(_replace)

    @_redis_retry
    async def append_capped(self, name, docs, cap):
        if not docs:
            return await self.length(name)

        def _append():
            pipe = self.r.pipeline()
            pipe.rpush(name, *[json.dumps(d, ensure_ascii=False) for d in docs])
            pipe.ltrim(name, -cap, -1)
            pipe.llen(name)
            return pipe.execute()

        results = await self._run(_append)
        return int(results[-1])

    async def tail(self, name, limit=None):
        if limit is not None and limit <= 0:
            return []
        start = 0 if limit is None else -limit
        raw = await self._run(self.r.lrange, name, start, -1)
        return [json.loads(v) for v in raw or []]

    async def length(self, name):
        return int(await self._run(self.r.llen, name))


def make_store(url: Optional[str]):
    if url:
        logger.info("[store] Using Redis store")
        return RedisStore.from_url(url)
    logger.info("[store] REDIS_URL not set, using in-memory store")
    return MemoryStore()
