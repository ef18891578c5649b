"""Rotation state machine: decide, reserve, persist."""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from court_rotation.config import RotationSettings
from court_rotation.domain.models import (
    CourtPhase,
    CourtState,
    CourtStatus,
    MultiSession,
    Session,
    next_group_index,
)
from court_rotation.domain.results import CourtTickResult, TickAction, TickReport, TickResult
from court_rotation.logging import logger
from court_rotation.services.exceptions import ReservationApiError, StorageError
from court_rotation.services.reservation_client import ReservationClient
from court_rotation.storage import Lease, StateStore
from court_rotation.utils.datetime import Clock, ceil_minutes, utc_now

Sleeper = Callable[[float], Awaitable[None]]

LOCK_MARGIN_SECONDS = 10


class RotationEngine:
    """Evaluates every active court once per tick.

    A court rotates at most once per interval, measured from its own
    ``last_rotation_time``. The decide-and-act sequence for a session runs
    under a store lock, so overlapping ticks (internal timer plus an external
    trigger) cannot both reserve for the same window. The lock TTL covers one
    court and is refreshed before every reserve; a tick that loses it stops
    without reserving again.
    """

    def __init__(
        self,
        store: StateStore,
        client: ReservationClient,
        settings: RotationSettings | None = None,
        *,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.settings = settings or RotationSettings()
        self._clock = clock
        self._sleep = sleep

    @property
    def interval(self) -> timedelta:
        return timedelta(minutes=self.settings.interval_minutes)

    @property
    def lock_ttl_seconds(self) -> int:
        """Worst case for one court: settle, reserve and two store writes."""

        per_court = (
            self.settings.rotation_settle_seconds
            + self.settings.reserve_timeout_seconds
            + 2 * self.store.operation_timeout
        )
        return max(self.store.lock_ttl_seconds, math.ceil(per_court) + LOCK_MARGIN_SECONDS)

    def court_phase(
        self, court: CourtState, now: datetime, end_time: datetime | None = None
    ) -> tuple[CourtPhase, timedelta]:
        """Phase of a court, plus the wait before it may rotate.

        A court exists only once its initial reservation succeeded, so it is
        never observed pending. Expiry wins over every other phase.
        """

        if end_time is not None and now >= end_time:
            return CourtPhase.EXPIRED, timedelta(0)
        if court.status == CourtStatus.FAILED:
            return CourtPhase.FAILED, timedelta(0)
        elapsed = now - court.last_rotation_time
        if elapsed < self.interval:
            return CourtPhase.ACTIVE, self.interval - elapsed
        return CourtPhase.ROTATING, timedelta(0)

    def minutes_to_next_rotation(self, court: CourtState, now: datetime) -> int:
        return ceil_minutes(court.next_rotation_time(self.interval) - now)

    async def rotate_court(self, court: CourtState) -> int:
        """Seat the next group; the reservation API requeues the previous one."""

        next_index = next_group_index(court.current_group_index)
        members = court.group_names(next_index)
        logger.info(
            "rotation_started",
            court_id=court.court_id,
            court_number=court.court_number,
            next_group=next_index,
            members=members,
        )
        await self._sleep(self.settings.rotation_settle_seconds)
        try:
            async with asyncio.timeout(self.settings.reserve_timeout_seconds):
                await self.client.reserve_court(court.court_id, members, "full", "queue")
        except TimeoutError as exc:
            raise ReservationApiError(
                f"reserve for court {court.court_id} exceeded "
                f"{self.settings.reserve_timeout_seconds} seconds"
            ) from exc
        return next_index

    async def tick(self) -> TickReport:
        single = await self.tick_single()
        multi = await self.tick_multi()
        return TickReport(single=single, multi=multi)

    async def tick_single(self) -> TickResult:
        session = await self.store.single.load()
        if session is None:
            return TickResult(scope="single", action=TickAction.NONE, message="No active automation found")

        try:
            async with self.store.lock(f"single:{session.session_id}", self.lock_ttl_seconds) as lease:
                if not lease:
                    return _locked("single", session.session_id)
                current = await self.store.single.load_by_id(session.session_id)
                if current is None:
                    return TickResult(
                        scope="single",
                        action=TickAction.NONE,
                        message="Automation was removed",
                        session_id=session.session_id,
                    )
                return await self._advance_single(current, lease)
        except StorageError as exc:
            logger.error("tick_storage_failed", scope="single", session_id=session.session_id, error=str(exc))
            return TickResult(
                scope="single",
                action=TickAction.ERROR,
                message=f"State store failure: {exc}",
                session_id=session.session_id,
            )

    async def _advance_single(self, session: Session, lease: Lease) -> TickResult:
        now = self._clock()
        phase, wait = self.court_phase(session, now, session.end_time)
        if phase is CourtPhase.EXPIRED:
            logger.info("session_expired", scope="single", session_id=session.session_id)
            await self.store.single.delete(session.session_id)
            return TickResult(
                scope="single",
                action=TickAction.STOPPED,
                message="Automation duration expired, stopped automation",
                session_id=session.session_id,
            )
        if not session.is_active or phase is CourtPhase.FAILED:
            return TickResult(
                scope="single",
                action=TickAction.NONE,
                message="Automation is not active",
                session_id=session.session_id,
            )

        if phase is CourtPhase.ACTIVE:
            minutes = ceil_minutes(wait)
            logger.info("rotation_not_due", scope="single", court_id=session.court_id, minutes_remaining=minutes)
            return TickResult(
                scope="single",
                action=TickAction.WAITING,
                message=f"Next rotation in {minutes} minutes",
                session_id=session.session_id,
                courts=[_court_result(session, TickAction.WAITING, minutes=minutes)],
            )

        if not await lease.refresh():
            return _lock_lost("single", session.session_id)
        try:
            new_index = await self.rotate_court(session)
        except ReservationApiError as exc:
            logger.error(
                "rotation_failed", scope="single", court_id=session.court_id, error=str(exc)
            )
            failed = session.model_copy(
                update={"is_active": False, "status": CourtStatus.FAILED, "last_error": str(exc)}
            )
            await self.store.single.save(failed)
            return TickResult(
                scope="single",
                action=TickAction.ERROR,
                message=str(exc),
                session_id=session.session_id,
                courts=[_court_result(failed, TickAction.ERROR, error=str(exc))],
            )

        rotated = session.model_copy(
            update={"current_group_index": new_index, "last_rotation_time": now, "last_error": None}
        )
        await self.store.single.save(rotated)
        logger.info(
            "rotation_completed",
            scope="single",
            court_id=rotated.court_id,
            current_group=new_index,
            members=rotated.current_group,
        )
        return TickResult(
            scope="single",
            action=TickAction.ROTATED,
            message=f"Rotated to group {new_index}",
            session_id=session.session_id,
            courts=[
                _court_result(
                    rotated,
                    TickAction.ROTATED,
                    minutes=self.settings.interval_minutes,
                    next_rotation=rotated.next_rotation_time(self.interval),
                )
            ],
        )

    async def tick_multi(self) -> TickResult:
        session = await self.store.multi.load()
        if session is None:
            return TickResult(scope="multi", action=TickAction.NONE, message="No active multi-court automation found")

        try:
            async with self.store.lock(f"multi:{session.session_id}", self.lock_ttl_seconds) as lease:
                if not lease:
                    return _locked("multi", session.session_id)
                current = await self.store.multi.load_by_id(session.session_id)
                if current is None:
                    return TickResult(
                        scope="multi",
                        action=TickAction.NONE,
                        message="Multi-court automation was removed",
                        session_id=session.session_id,
                    )
                return await self._advance_multi(current, lease)
        except StorageError as exc:
            logger.error("tick_storage_failed", scope="multi", session_id=session.session_id, error=str(exc))
            return TickResult(
                scope="multi",
                action=TickAction.ERROR,
                message=f"State store failure: {exc}",
                session_id=session.session_id,
            )

    async def _advance_multi(self, session: MultiSession, lease: Lease) -> TickResult:
        now = self._clock()
        if session.is_expired(now):
            logger.info("session_expired", scope="multi", session_id=session.session_id)
            await self.store.multi.delete(session.session_id)
            return TickResult(
                scope="multi",
                action=TickAction.STOPPED,
                message="Multi-court automation duration expired, stopped automation",
                session_id=session.session_id,
            )
        if not session.is_active:
            return TickResult(
                scope="multi",
                action=TickAction.NONE,
                message="Multi-court automation is not active",
                session_id=session.session_id,
            )

        courts = list(session.courts)
        results: list[CourtTickResult] = []
        for position, court in enumerate(courts):
            phase, wait = self.court_phase(court, now)
            if phase is CourtPhase.FAILED:
                results.append(_court_result(court, TickAction.NONE, error=court.last_error))
                continue
            if phase is CourtPhase.ACTIVE:
                minutes = ceil_minutes(wait)
                logger.info(
                    "rotation_not_due",
                    scope="multi",
                    court_number=court.court_number,
                    minutes_remaining=minutes,
                )
                results.append(_court_result(court, TickAction.WAITING, minutes=minutes))
                continue

            if not await lease.refresh():
                # Courts already rotated in this tick stay persisted.
                return _lock_lost("multi", session.session_id, results)
            try:
                new_index = await self.rotate_court(court)
            except ReservationApiError as exc:
                # Contained: siblings keep rotating in this tick.
                logger.error(
                    "rotation_failed",
                    scope="multi",
                    court_id=court.court_id,
                    court_number=court.court_number,
                    error=str(exc),
                )
                courts[position] = court.model_copy(
                    update={"status": CourtStatus.FAILED, "last_error": str(exc)}
                )
                session = await self._persist_multi(session, courts)
                results.append(_court_result(courts[position], TickAction.ERROR, error=str(exc)))
                continue

            courts[position] = court.model_copy(
                update={"current_group_index": new_index, "last_rotation_time": now, "last_error": None}
            )
            session = await self._persist_multi(session, courts)
            logger.info(
                "rotation_completed",
                scope="multi",
                court_id=court.court_id,
                court_number=court.court_number,
                current_group=new_index,
            )
            results.append(
                _court_result(
                    courts[position],
                    TickAction.ROTATED,
                    minutes=self.settings.interval_minutes,
                    next_rotation=courts[position].next_rotation_time(self.interval),
                )
            )

        return _summarize_multi(session.session_id, results)

    async def _persist_multi(self, session: MultiSession, courts: list[CourtState]) -> MultiSession:
        still_active = any(court.status == CourtStatus.ACTIVE for court in courts)
        if not still_active:
            logger.warning("multi_session_all_courts_failed", session_id=session.session_id)
        updated = session.model_copy(update={"courts": list(courts), "is_active": still_active})
        await self.store.multi.save(updated)
        return updated


def _locked(scope: str, session_id: str) -> TickResult:
    return TickResult(
        scope=scope,
        action=TickAction.WAITING,
        message="Another tick is already processing this session",
        session_id=session_id,
        reason="locked",
    )


def _lock_lost(
    scope: str, session_id: str, courts: list[CourtTickResult] | None = None
) -> TickResult:
    return TickResult(
        scope=scope,
        action=TickAction.WAITING,
        message="Lost the session lock before rotating; the next tick resumes",
        session_id=session_id,
        reason="lock_lost",
        courts=courts or [],
    )


def _court_result(
    court: CourtState,
    action: TickAction,
    *,
    minutes: int | None = None,
    next_rotation: datetime | None = None,
    error: str | None = None,
) -> CourtTickResult:
    return CourtTickResult(
        court_id=court.court_id,
        court_number=court.court_number,
        action=action,
        current_group=court.current_group_index,
        current_users=court.current_group,
        minutes_to_next_rotation=minutes,
        next_rotation_time=next_rotation,
        error=error,
    )


def _summarize_multi(session_id: str, results: list[CourtTickResult]) -> TickResult:
    rotated = [result for result in results if result.action is TickAction.ROTATED]
    failed = [result for result in results if result.action is TickAction.ERROR]
    waiting = [result for result in results if result.action is TickAction.WAITING]
    if rotated:
        action = TickAction.ROTATED
        message = f"Rotated {len(rotated)} of {len(results)} courts"
        if failed:
            message += f", {len(failed)} failed"
    elif failed:
        action = TickAction.ERROR
        message = f"{len(failed)} of {len(results)} courts failed to rotate"
    elif waiting:
        action = TickAction.WAITING
        soonest = min(result.minutes_to_next_rotation or 0 for result in waiting)
        message = f"Next rotation in {soonest} minutes"
    else:
        action = TickAction.NONE
        message = "No courts left to rotate"
    return TickResult(
        scope="multi",
        action=action,
        message=message,
        session_id=session_id,
        courts=results,
    )


__all__ = ["RotationEngine"]
