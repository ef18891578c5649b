"""Key-value backends the state store can run on."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from court_rotation.config import StorageSettings
from court_rotation.services.exceptions import StorageError

# Deletes the key only while it still holds the caller's token.
_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

# Pushes out the expiry only while the key still holds the caller's token.
_COMPARE_AND_EXPIRE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""


class KeyValueBackend(ABC):
    """Minimal string key-value capability with per-key expiry."""

    name: str = "abstract"

    @abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    @abstractmethod
    async def delete(self, *keys: str) -> None: ...

    @abstractmethod
    async def delete_if_equals(self, key: str, value: str) -> bool: ...

    @abstractmethod
    async def expire_if_equals(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None


class RedisBackend(KeyValueBackend):
    """Direct connection through ``redis.asyncio``."""

    name = "redis"

    def __init__(self, url: str | None = None, *, client: Any | None = None) -> None:
        if client is None:
            if not url:
                raise ValueError("RedisBackend needs a URL or a client")
            client = aioredis.from_url(url, decode_responses=True)
        self._client = client

    async def get(self, key: str) -> str | None:
        try:
            value = await self._client.get(key)
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis GET {key} failed: {exc}") from exc
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis SET {key} failed: {exc}") from exc

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(await self._client.set(key, value, ex=ttl_seconds, nx=True))
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis SET NX {key} failed: {exc}") from exc

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self._client.delete(*keys)
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis DEL failed: {exc}") from exc

    async def delete_if_equals(self, key: str, value: str) -> bool:
        try:
            return bool(await self._client.eval(_COMPARE_AND_DELETE, 1, key, value))
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis compare-and-delete {key} failed: {exc}") from exc

    async def expire_if_equals(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            return bool(await self._client.eval(_COMPARE_AND_EXPIRE, 1, key, value, ttl_seconds))
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis compare-and-expire {key} failed: {exc}") from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as exc:
            raise StorageError(f"redis PING failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


class RestBackend(KeyValueBackend):
    """Managed key-value service speaking the Upstash-style REST command protocol."""

    name = "rest"

    def __init__(self, http_client: httpx.AsyncClient, *, url: str, token: str | None = None) -> None:
        self._client = http_client
        self._url = url.rstrip("/")
        self._token = token

    async def _command(self, *args: Any) -> Any:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            response = await self._client.post(
                self._url, json=[str(arg) for arg in args], headers=headers
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"key-value service {args[0]} failed ({exc.response.status_code})"
            ) from exc
        except (httpx.RequestError, ValueError) as exc:
            raise StorageError(f"key-value service {args[0]} failed: {exc}") from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise StorageError(f"key-value service {args[0]} failed: {payload['error']}")
        return payload.get("result") if isinstance(payload, dict) else None

    async def get(self, key: str) -> str | None:
        return await self._command("GET", key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._command("SET", key, value, "EX", ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return await self._command("SET", key, value, "EX", ttl_seconds, "NX") == "OK"

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._command("DEL", *keys)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._command("EVAL", _COMPARE_AND_DELETE, 1, key, value))

    async def expire_if_equals(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(
            await self._command("EVAL", _COMPARE_AND_EXPIRE, 1, key, value, ttl_seconds)
        )

    async def ping(self) -> bool:
        return await self._command("PING") == "PONG"


class MemoryBackend(KeyValueBackend):
    """In-process dictionary with expiry; used by tests and local runs."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def ttl(self, key: str) -> float | None:
        if self._live(key) is None:
            return None
        return self._data[key][1] - self._clock()

    def keys(self) -> list[str]:
        return [key for key in list(self._data) if self._live(key) is not None]

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._clock() + ttl_seconds)
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._data.pop(key, None)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self._live(key) != value:
            return False
        del self._data[key]
        return True

    async def expire_if_equals(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._live(key) != value:
            return False
        self._data[key] = (value, self._clock() + ttl_seconds)
        return True

    async def ping(self) -> bool:
        return True


def build_backend(
    settings: StorageSettings, http_client: httpx.AsyncClient | None = None
) -> KeyValueBackend:
    """Pick the backend variant named in settings."""

    if settings.backend == "memory":
        return MemoryBackend()
    if settings.backend == "rest":
        if settings.rest_url is None:
            raise ValueError("storage.rest_url is required for the rest backend")
        if http_client is None:
            raise ValueError("the rest backend needs a shared httpx.AsyncClient")
        token = settings.rest_token.get_secret_value() if settings.rest_token else None
        return RestBackend(http_client, url=str(settings.rest_url), token=token)
    return RedisBackend(settings.redis_url)


__all__ = [
    "KeyValueBackend",
    "MemoryBackend",
    "RedisBackend",
    "RestBackend",
    "build_backend",
]
