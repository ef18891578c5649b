"""Application entrypoint."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from dataclasses import dataclass

import httpx

from court_rotation.config import AutomationSettings, get_settings
from court_rotation.logging import configure_logging, logger
from court_rotation.services.automation import AutomationService
from court_rotation.services.reservation_client import ReservationClient
from court_rotation.services.rotation import RotationEngine
from court_rotation.services.scheduler import Scheduler
from court_rotation.services.sessions import SessionManager
from court_rotation.services.user_pool import UserPoolManager
from court_rotation.storage import StateStore


@dataclass(slots=True)
class Application:
    settings: AutomationSettings
    http_client: httpx.AsyncClient
    store: StateStore
    engine: RotationEngine
    scheduler: Scheduler
    service: AutomationService

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.store.close()
        await self.http_client.aclose()


def build_application(
    settings: AutomationSettings, http_client: httpx.AsyncClient | None = None
) -> Application:
    """Wire every component explicitly; nothing here is a module-level singleton."""

    http_client = http_client or httpx.AsyncClient(
        timeout=settings.reservation_api.request_timeout_seconds
    )
    store = StateStore.from_settings(settings.storage, http_client)
    client = ReservationClient(http_client, settings.reservation_api)
    engine = RotationEngine(store, client, settings.rotation)
    pool = UserPoolManager(client, store, settings.rotation)
    sessions = SessionManager(store, client, pool, engine, settings.rotation)
    scheduler = Scheduler(engine, settings.scheduler)
    service = AutomationService(sessions, scheduler, client)
    return Application(
        settings=settings,
        http_client=http_client,
        store=store,
        engine=engine,
        scheduler=scheduler,
        service=service,
    )


async def main(stop_event: asyncio.Event | None = None) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = build_application(settings)
    readiness = await app.store.wait_until_ready(
        max_attempts=settings.storage.connect_max_attempts,
        base_delay=settings.storage.connect_base_delay,
    )
    logger.info(
        "automation_starting",
        environment=settings.environment,
        storage_backend=readiness.backend,
        storage_connected=readiness.connected,
    )

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        if settings.scheduler.enabled:
            await app.scheduler.start()
        await stop_event.wait()
    finally:
        logger.info("automation_stopping")
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
        await app.aclose()


if __name__ == "__main__":
    asyncio.run(main())
