"""Durable session persistence on top of a key-value backend."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx
from pydantic import ValidationError

from court_rotation.config import StorageSettings
from court_rotation.domain.models import MultiSession, Scope, Session
from court_rotation.logging import logger
from court_rotation.services.exceptions import StorageError
from court_rotation.storage.backends import KeyValueBackend, build_backend
from court_rotation.utils.retry import retry_async

T = TypeVar("T")
SessionT = TypeVar("SessionT", Session, MultiSession)

POINTER_KEYS: dict[str, str] = {
    "single": "automation:session",
    "multi": "automation:multi:session",
}
BODY_PREFIXES: dict[str, str] = {
    "single": "automation:state:",
    "multi": "automation:multi:state:",
}
LOCK_PREFIX = "automation:lock:"


@dataclass(slots=True)
class ConnectionStatus:
    connected: bool
    backend: str
    attempts: int
    response_time_ms: float | None = None
    error: str | None = None


class Lease:
    """A held (or refused) advisory lock."""

    def __init__(self, store: StateStore, *, name: str, key: str, token: str, ttl_seconds: int) -> None:
        self._store = store
        self.name = name
        self.key = key
        self.token = token
        self.ttl_seconds = ttl_seconds
        self.acquired = False

    def __bool__(self) -> bool:
        return self.acquired

    async def refresh(self) -> bool:
        """Restart the TTL; False once the key expired or passed to another holder."""

        if not self.acquired:
            return False
        renewed = await self._store.call(
            "refresh_lock",
            lambda: self._store.backend.expire_if_equals(self.key, self.token, self.ttl_seconds),
        )
        if not renewed:
            logger.warning("lock_lost", lock=self.name)
            self.acquired = False
        return renewed


class SessionRepository(Generic[SessionT]):
    """Pointer + body records for one scope.

    The pointer key names the current session id; the body key holds the
    serialized session. ``load`` and ``load_by_id`` never raise; writes raise
    ``StorageError``.
    """

    def __init__(self, store: StateStore, scope: Scope, model: type[SessionT]) -> None:
        self._store = store
        self.scope = scope
        self.model = model
        self.pointer_key = POINTER_KEYS[scope]

    def body_key(self, session_id: str) -> str:
        return f"{BODY_PREFIXES[self.scope]}{session_id}"

    async def save(self, session: SessionT) -> None:
        backend = self._store.backend
        ttl = self._store.ttl_seconds
        body = session.model_dump_json(by_alias=True)
        # Body first so the pointer never references a missing record.
        await self._store.call(
            "save_body", lambda: backend.set(self.body_key(session.session_id), body, ttl)
        )
        await self._store.call(
            "save_pointer", lambda: backend.set(self.pointer_key, session.session_id, ttl)
        )

    async def load(self) -> SessionT | None:
        try:
            return await self.fetch()
        except StorageError as exc:
            logger.warning("session_load_failed", scope=self.scope, error=str(exc))
            return None

    async def load_by_id(self, session_id: str) -> SessionT | None:
        try:
            return await self.fetch_by_id(session_id)
        except StorageError as exc:
            logger.warning(
                "session_load_failed", scope=self.scope, session_id=session_id, error=str(exc)
            )
            return None

    async def fetch(self) -> SessionT | None:
        """Like ``load`` but lets ``StorageError`` through."""

        session_id = await self._store.call(
            "load_pointer", lambda: self._store.backend.get(self.pointer_key)
        )
        if not session_id:
            return None
        return await self.fetch_by_id(session_id)

    async def fetch_by_id(self, session_id: str) -> SessionT | None:
        raw = await self._store.call(
            "load_body", lambda: self._store.backend.get(self.body_key(session_id))
        )
        if not raw:
            return None
        try:
            return self.model.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "session_record_invalid",
                scope=self.scope,
                session_id=session_id,
                error=str(exc),
            )
            return None

    async def delete(self, session_id: str | None = None) -> None:
        backend = self._store.backend
        if session_id is None:
            session_id = await self._store.call("load_pointer", lambda: backend.get(self.pointer_key))
            if session_id:
                await self._store.call(
                    "delete_body", lambda: backend.delete(self.body_key(session_id))
                )
            await self._store.call("delete_pointer", lambda: backend.delete(self.pointer_key))
            return

        await self._store.call("delete_body", lambda: backend.delete(self.body_key(session_id)))
        # Leave the pointer alone when it already names a newer session.
        await self._store.call(
            "delete_pointer", lambda: backend.delete_if_equals(self.pointer_key, session_id)
        )


class StateStore:
    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        ttl_seconds: int = 6 * 60 * 60,
        operation_timeout: float = 5.0,
        lock_ttl_seconds: int = 120,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.operation_timeout = operation_timeout
        self.lock_ttl_seconds = lock_ttl_seconds
        self.single: SessionRepository[Session] = SessionRepository(self, "single", Session)
        self.multi: SessionRepository[MultiSession] = SessionRepository(self, "multi", MultiSession)

    @classmethod
    def from_settings(
        cls, settings: StorageSettings, http_client: httpx.AsyncClient | None = None
    ) -> StateStore:
        return cls(
            build_backend(settings, http_client),
            ttl_seconds=settings.ttl_seconds,
            operation_timeout=settings.operation_timeout_seconds,
            lock_ttl_seconds=settings.lock_ttl_seconds,
        )

    def sessions(self, scope: Scope) -> SessionRepository:
        return self.single if scope == "single" else self.multi

    async def call(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one backend operation under the store timeout."""

        try:
            async with asyncio.timeout(self.operation_timeout):
                return await operation()
        except TimeoutError as exc:
            raise StorageError(
                f"{name} timed out after {self.operation_timeout} seconds"
            ) from exc

    @asynccontextmanager
    async def lock(self, name: str, ttl_seconds: int | None = None) -> AsyncIterator[Lease]:
        """Advisory lock; yields a falsy lease without waiting when another holder has it.

        The key expires after ``ttl_seconds``. Holders doing more work than one
        TTL covers call ``Lease.refresh`` between steps.
        """

        lease = Lease(
            self,
            name=name,
            key=f"{LOCK_PREFIX}{name}",
            token=uuid.uuid4().hex,
            ttl_seconds=ttl_seconds or self.lock_ttl_seconds,
        )
        lease.acquired = await self.call(
            "acquire_lock",
            lambda: self.backend.set_if_absent(lease.key, lease.token, lease.ttl_seconds),
        )
        if not lease.acquired:
            logger.info("lock_busy", lock=name)
        try:
            yield lease
        finally:
            if lease.acquired:
                try:
                    await self.call(
                        "release_lock", lambda: self.backend.delete_if_equals(lease.key, lease.token)
                    )
                except StorageError as exc:
                    # The lock TTL reclaims it.
                    logger.warning("lock_release_failed", lock=name, error=str(exc))

    async def wait_until_ready(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> ConnectionStatus:
        """Ping the backend with bounded retries and report, rather than raise, the outcome."""

        attempts = 0
        started = time.perf_counter()

        async def _ping() -> bool:
            nonlocal attempts
            attempts += 1
            if not await self.call("ping", self.backend.ping):
                raise StorageError("ping returned a negative reply")
            return True

        try:
            await retry_async(
                _ping,
                max_attempts=max_attempts,
                base_delay=base_delay,
                retry_on=(StorageError,),
                logger=logger,
                operation_name="state_store_ping",
                sleep=sleep,
            )
        except StorageError as exc:
            logger.error(
                "state_store_unreachable",
                backend=self.backend.name,
                attempts=attempts,
                error=str(exc),
            )
            return ConnectionStatus(
                connected=False, backend=self.backend.name, attempts=attempts, error=str(exc)
            )

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "state_store_ready",
            backend=self.backend.name,
            attempts=attempts,
            response_time_ms=elapsed_ms,
        )
        return ConnectionStatus(
            connected=True,
            backend=self.backend.name,
            attempts=attempts,
            response_time_ms=elapsed_ms,
        )

    async def close(self) -> None:
        await self.backend.close()


__all__ = [
    "BODY_PREFIXES",
    "LOCK_PREFIX",
    "POINTER_KEYS",
    "ConnectionStatus",
    "Lease",
    "SessionRepository",
    "StateStore",
]
