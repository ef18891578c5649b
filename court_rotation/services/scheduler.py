"""Recurring driver for the rotation engine."""

from __future__ import annotations

import asyncio
import contextlib

from court_rotation.config import SchedulerSettings
from court_rotation.domain.results import TickReport
from court_rotation.logging import logger
from court_rotation.services.rotation import RotationEngine


class Scheduler:
    """Runs ``RotationEngine.tick`` once on start and then every period.

    ``trigger`` runs the same tick out of band (e.g. from an external cron
    ping). Overlapping ticks are safe because the engine serializes each
    session behind a store lock.
    """

    def __init__(self, engine: RotationEngine, settings: SchedulerSettings | None = None) -> None:
        self.engine = engine
        self.settings = settings or SchedulerSettings()
        self._task: asyncio.Task | None = None
        self.last_report: TickReport | None = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.info("scheduler_already_running")
            return
        logger.info(
            "scheduler_starting",
            period_seconds=self.settings.period_seconds,
            run_immediately=self.settings.run_immediately,
        )
        if self.settings.run_immediately:
            await self._run_once()
        self._task = asyncio.create_task(self._loop(), name="court-rotation-scheduler")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("scheduler_stopped", runs=self.runs)

    async def trigger(self) -> TickReport:
        logger.info("scheduler_triggered")
        return await self.engine.tick()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.period_seconds)
            await self._run_once()

    async def _run_once(self) -> TickReport | None:
        try:
            report = await self.engine.tick()
        except Exception:
            logger.exception("scheduler_tick_failed")
            return None
        self.runs += 1
        self.last_report = report
        logger.info(
            "scheduler_tick_completed",
            single=report.single.action.value,
            multi=report.multi.action.value,
        )
        return report


__all__ = ["Scheduler"]
