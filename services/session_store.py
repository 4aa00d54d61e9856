"""
Short-TTL key-value store for flow sessions, processing records, chat
session caches and OTPs.

Redis (redis.asyncio) when REDIS_URL is set; otherwise an in-process TTL
dictionary for development and tests. Values are JSON-encoded with orjson.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import orjson
import redis.asyncio as aioredis

from config import Config

logger = logging.getLogger(__name__)


# Key helpers
def flow_session_key(flow_token: str) -> str:
    return f"session:{flow_token}"


def transfer_processing_key(user_id: str, ts: Optional[int] = None) -> str:
    return f"transfer_processing:{user_id}:{ts if ts is not None else int(time.time() * 1000)}"


def data_purchase_processing_key(user_id: str, ts: Optional[int] = None) -> str:
    return f"data_purchase_processing:{user_id}:{ts if ts is not None else int(time.time() * 1000)}"


def chat_session_key(phone_number: str) -> str:
    return f"whatsapp:{phone_number}"


def otp_key(phone_number: str) -> str:
    return f"otp:{phone_number}"


class InMemoryTTLStore:
    """Process-local store with per-key expiry"""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[bytes, Optional[float]]] = {}

    def _alive(self, key: str) -> Optional[bytes]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: bytes, ttl: Optional[int]) -> None:
        self._data[key] = (value, self._clock() + ttl if ttl else None)

    async def get(self, key: str) -> Optional[bytes]:
        return self._alive(key)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def scan(self, prefix: str) -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._alive(key) is not None]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()


class RedisTTLStore:
    """redis.asyncio backend"""

    def __init__(self, url: str):
        self._client = aioredis.from_url(url, socket_connect_timeout=5, socket_timeout=5)

    async def set(self, key: str, value: bytes, ttl: Optional[int]) -> None:
        await self._client.set(key, value, ex=ttl)

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(key))

    async def scan(self, prefix: str) -> List[str]:
        keys = []
        async for key in self._client.scan_iter(match=f"{prefix}*", count=200):
            keys.append(key.decode() if isinstance(key, bytes) else key)
        return keys

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class SessionStore:
    """JSON facade over the configured backend"""

    def __init__(self, backend=None):
        if backend is None:
            if Config.REDIS_URL:
                backend = RedisTTLStore(Config.REDIS_URL)
                logger.info("🗄️ Short-TTL store: Redis")
            else:
                backend = InMemoryTTLStore()
                logger.info("🗄️ Short-TTL store: in-process")
        self.backend = backend

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.backend.set(key, orjson.dumps(value, default=str), ttl)

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.backend.get(key)
        if raw is None:
            return None
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            logger.error(f"❌ SESSION_STORE_CORRUPT: key={key} - dropping entry")
            await self.backend.delete(key)
            return None

    async def delete(self, key: str) -> bool:
        return await self.backend.delete(key)

    async def scan(self, prefix: str) -> List[str]:
        return await self.backend.scan(prefix)

    async def health_check(self) -> bool:
        try:
            return await self.backend.ping()
        except aioredis.RedisError as e:
            logger.error(f"❌ Short-TTL store unreachable: {e}")
            return False

    async def close(self) -> None:
        await self.backend.close()


_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    global _session_store
    if _session_store is None:
        _session_store = SessionStore()
    return _session_store


def set_session_store(store: Optional[SessionStore]) -> None:
    """Swap the shared store (tests, shutdown)"""
    global _session_store
    _session_store = store
