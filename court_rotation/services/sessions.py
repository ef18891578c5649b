"""Session lifecycle: start, stop and status for single and multi-court automation."""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timedelta
from typing import Sequence

from court_rotation.config import RotationSettings
from court_rotation.domain.models import (
    POOL_SIZE,
    CourtInfo,
    CourtState,
    MultiSession,
    Scope,
    Session,
    User,
    new_session_id,
    split_groups,
)
from court_rotation.domain.results import (
    CourtStatusView,
    SessionStatusView,
    StatusReport,
    StoppedSession,
    StopResult,
)
from court_rotation.logging import logger
from court_rotation.services.exceptions import (
    ConflictError,
    ExpiredSession,
    InvalidRequest,
    ReservationApiError,
    StorageError,
)
from court_rotation.services.reservation_client import ReservationClient, ReservationResult
from court_rotation.services.rotation import RotationEngine, Sleeper
from court_rotation.services.user_pool import UserPoolManager
from court_rotation.storage import Lease, StateStore
from court_rotation.utils.datetime import Clock, format_remaining, utc_now

# Covers the slowest single phase of a start: provisioning one pool of
# twelve users. The lease is refreshed between phases.
START_LOCK_TTL_SECONDS = 600


class SessionManager:
    def __init__(
        self,
        store: StateStore,
        client: ReservationClient,
        pool: UserPoolManager,
        engine: RotationEngine,
        settings: RotationSettings | None = None,
        *,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.pool = pool
        self.engine = engine
        self.settings = settings or RotationSettings()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _validate_duration(self, duration_hours: float) -> None:
        if duration_hours is None or duration_hours <= 0:
            raise InvalidRequest("durationHours must be a positive number")
        if duration_hours > self.settings.max_duration_hours:
            raise InvalidRequest(
                f"durationHours must not exceed {self.settings.max_duration_hours}"
            )

    async def start_single(self, court_id: str, duration_hours: float) -> Session:
        if not court_id:
            raise InvalidRequest("courtId is required")
        self._validate_duration(duration_hours)

        async with self.store.lock("start:single", START_LOCK_TTL_SECONDS) as lease:
            if not lease:
                raise ConflictError("single")
            existing = await self._ensure_no_conflict("single")

            logger.info("session_starting", scope="single", court_id=court_id, duration_hours=duration_hours)
            users = await self.pool.acquire_pool(POOL_SIZE, "single")
            metadata = await self._court_metadata([court_id])
            await self._keep_start_lock(lease, "single")
            await self.initial_reservation(court_id, users)

            started = self._clock()
            info = metadata.get(court_id)
            session = Session(
                session_id=new_session_id(started, self._rng),
                court_id=court_id,
                court_number=info.number if info else None,
                court_name=info.name if info else None,
                users=users,
                current_group_index=0,
                last_rotation_time=started,
                start_time=started,
                end_time=started + timedelta(hours=duration_hours),
                is_active=True,
            )
            await self._keep_start_lock(lease, "single")
            await self.store.single.save(session)
            await self._discard_previous("single", existing, session.session_id)

        logger.info(
            "session_started",
            scope="single",
            session_id=session.session_id,
            end_time=session.end_time.isoformat(),
        )
        return session

    async def start_multi(self, court_ids: Sequence[str], duration_hours: float) -> MultiSession:
        court_ids = [court_id for court_id in (court_ids or []) if court_id]
        if not court_ids:
            raise InvalidRequest("At least one courtId is required")
        if len(set(court_ids)) != len(court_ids):
            raise InvalidRequest("courtIds must be unique")
        if len(court_ids) > self.settings.max_courts:
            raise InvalidRequest(f"At most {self.settings.max_courts} courts can be automated")
        self._validate_duration(duration_hours)

        async with self.store.lock("start:multi", START_LOCK_TTL_SECONDS) as lease:
            if not lease:
                raise ConflictError("multi")
            existing = await self._ensure_no_conflict("multi")

            logger.info(
                "session_starting", scope="multi", court_ids=court_ids, duration_hours=duration_hours
            )
            pools: list[list[User]] = []
            assigned: set[str] = set()
            for _ in court_ids:
                await self._keep_start_lock(lease, "multi")
                users = await self.pool.acquire_pool(POOL_SIZE, "multi", exclude=assigned)
                assigned.update(user.animal_name for user in users)
                pools.append(users)

            metadata = await self._court_metadata(court_ids)
            for court_id, users in zip(court_ids, pools):
                await self._keep_start_lock(lease, "multi")
                await self.initial_reservation(court_id, users)

            started = self._clock()
            courts = []
            for court_id, users in zip(court_ids, pools):
                info = metadata.get(court_id)
                courts.append(
                    CourtState(
                        court_id=court_id,
                        court_number=info.number if info else None,
                        court_name=info.name if info else None,
                        users=users,
                        current_group_index=0,
                        last_rotation_time=started,
                    )
                )
            session = MultiSession(
                session_id=new_session_id(started, self._rng),
                courts=courts,
                start_time=started,
                end_time=started + timedelta(hours=duration_hours),
                is_active=True,
            )
            await self._keep_start_lock(lease, "multi")
            await self.store.multi.save(session)
            await self._discard_previous("multi", existing, session.session_id)

        logger.info(
            "session_started",
            scope="multi",
            session_id=session.session_id,
            courts=len(courts),
            end_time=session.end_time.isoformat(),
        )
        return session

    async def initial_reservation(self, court_id: str, users: list[User]) -> ReservationResult:
        """Queue all three groups in order: group 0 takes the court, 1 and 2 wait."""

        if len(users) < POOL_SIZE:
            raise InvalidRequest(f"Need at least {POOL_SIZE} users, got {len(users)}")
        results: list[ReservationResult] = []
        for index, group in enumerate(split_groups(users[:POOL_SIZE])):
            if index:
                await self._sleep(self.settings.initial_settle_seconds)
            names = [user.animal_name for user in group]
            logger.info("initial_reservation", court_id=court_id, group=index, members=names)
            try:
                async with asyncio.timeout(self.settings.reserve_timeout_seconds):
                    results.append(await self.client.reserve_court(court_id, names, "full", "queue"))
            except TimeoutError as exc:
                raise ReservationApiError(
                    f"initial reservation for court {court_id} timed out"
                ) from exc
        return results[0]

    async def _keep_start_lock(self, lease: Lease, scope: Scope) -> None:
        if not await lease.refresh():
            # Another start may own the scope now; persisting would race it.
            raise ConflictError(scope)

    async def _ensure_no_conflict(self, scope: Scope) -> Session | MultiSession | None:
        existing = await self.store.sessions(scope).load()
        if existing is not None and existing.is_live(self._clock()):
            logger.info("session_conflict", scope=scope, session_id=existing.session_id)
            raise ConflictError(scope, existing)
        return existing

    async def _discard_previous(
        self, scope: Scope, previous: Session | MultiSession | None, current_id: str
    ) -> None:
        if previous is None or previous.session_id == current_id:
            return
        try:
            await self.store.sessions(scope).delete(previous.session_id)
        except StorageError as exc:
            # The stale body expires with its TTL.
            logger.warning(
                "previous_session_cleanup_failed",
                scope=scope,
                session_id=previous.session_id,
                error=str(exc),
            )

    async def _court_metadata(self, court_ids: Sequence[str]) -> dict[str, CourtInfo]:
        try:
            courts = await self.client.list_courts()
        except ReservationApiError as exc:
            logger.warning("court_metadata_unavailable", court_ids=list(court_ids), error=str(exc))
            return {}
        wanted = set(court_ids)
        return {court.id: court for court in courts if court.id in wanted}

    async def stop(self) -> StopResult:
        stopped: list[StoppedSession] = []
        for scope in ("multi", "single"):
            repository = self.store.sessions(scope)
            session = await repository.load()
            if session is None:
                # Clears a pointer whose body already expired.
                await repository.delete()
                continue
            await repository.delete(session.session_id)
            stopped.append(
                StoppedSession(
                    scope=scope,
                    session_id=session.session_id,
                    courts_count=len(session.courts),
                    was_active=session.is_live(self._clock()),
                )
            )
            logger.info("session_stopped", scope=scope, session_id=session.session_id)

        if not stopped:
            return StopResult(success=True, message="No active automation found, nothing to stop")
        summary = ", ".join(
            f"{item.scope} ({item.courts_count} court{'s' if item.courts_count != 1 else ''})"
            for item in stopped
        )
        return StopResult(
            success=True,
            message=f"Automation stopped: {summary}",
            stopped=stopped,
            stopped_at=self._clock(),
        )

    async def status(self) -> StatusReport:
        return StatusReport(
            single=await self.scope_status("single"),
            multi=await self.scope_status("multi"),
        )

    async def scope_status(self, scope: Scope) -> SessionStatusView:
        try:
            session = await self.live_session(scope)
        except ExpiredSession as exc:
            return SessionStatusView(
                scope=scope,
                state="expired",
                session_id=exc.session_id,
                message="Automation expired and cleaned up",
            )
        except StorageError as exc:
            logger.warning("status_unavailable", scope=scope, error=str(exc))
            return SessionStatusView(
                scope=scope,
                state="unavailable",
                available=False,
                message="Automation status unavailable",
            )
        if session is None:
            return SessionStatusView(scope=scope, state="none", message="No automation running")

        now = self._clock()
        return SessionStatusView(
            scope=scope,
            state="running" if session.is_active else "inactive",
            active=session.is_active,
            message="Automation running" if session.is_active else "Automation stopped after a failure",
            session_id=session.session_id,
            start_time=session.start_time,
            end_time=session.end_time,
            time_remaining=format_remaining(session.end_time - now),
            total_users=len(session.users),
            courts=[self.court_view(court, now) for court in session.courts],
        )

    async def live_session(self, scope: Scope) -> Session | MultiSession | None:
        """Current session of ``scope``; an expired one is deleted and reported via ``ExpiredSession``."""

        repository = self.store.sessions(scope)
        session = await repository.fetch()
        if session is None:
            return None
        if session.is_expired(self._clock()):
            logger.info("session_expired", scope=scope, session_id=session.session_id)
            try:
                await repository.delete(session.session_id)
            except StorageError as exc:
                logger.warning(
                    "expired_session_cleanup_failed",
                    scope=scope,
                    session_id=session.session_id,
                    error=str(exc),
                )
            raise ExpiredSession(scope, session.session_id)
        return session

    async def is_active(self, scope: Scope) -> bool:
        session = await self.store.sessions(scope).load()
        return session is not None and session.is_live(self._clock())

    def court_view(self, court: CourtState, now: datetime) -> CourtStatusView:
        return CourtStatusView(
            court_id=court.court_id,
            court_number=court.court_number,
            court_name=court.court_name,
            status=court.status.value,
            current_group_index=court.current_group_index,
            current_group=court.current_group,
            waitlist_groups=[court.group_names(index) for index in court.waitlist_group_indexes],
            user_groups={
                f"group{index}": [user.animal_name for user in group]
                for index, group in enumerate(court.groups)
            },
            last_rotation_time=court.last_rotation_time,
            next_rotation_time=court.next_rotation_time(self.engine.interval),
            minutes_to_next_rotation=self.engine.minutes_to_next_rotation(court, now),
            last_error=court.last_error,
        )


__all__ = ["SessionManager", "START_LOCK_TTL_SECONDS"]
