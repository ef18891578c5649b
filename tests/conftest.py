"""Shared fixtures: in-memory store, scripted reservation client, controllable clock."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from court_rotation.config import RotationSettings
from court_rotation.domain.models import CourtInfo, User
from court_rotation.services.exceptions import ReservationApiError
from court_rotation.services.reservation_client import (
    ApprovalResult,
    RegisterResult,
    ReservationResult,
)
from court_rotation.services.rotation import RotationEngine
from court_rotation.services.sessions import SessionManager
from court_rotation.services.user_pool import UserPoolManager
from court_rotation.storage import MemoryBackend, StateStore

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, minutes: float = 0, hours: float = 0) -> None:
        self.now += timedelta(minutes=minutes, hours=hours)


class FakeReservationClient:
    """Records calls; failures are scripted per phone number, name or court."""

    def __init__(self) -> None:
        self.registered: list[str] = []
        self.approved: list[str] = []
        self.reservations: list[tuple[str, list[str]]] = []
        self.fail_register: set[str] = set()
        self.fail_approve: set[str] = set()
        self.fail_courts: set[str] = set()
        self.fail_listing = False
        self.courts = [
            CourtInfo(id="court-a", name="Court A", number=1),
            CourtInfo(id="court-b", name="Court B", number=2),
        ]
        self._counter = 0

    async def register_user(self, phone_number: str) -> RegisterResult:
        self.registered.append(phone_number)
        if phone_number in self.fail_register or "*" in self.fail_register:
            raise ReservationApiError(f"register {phone_number} failed", status_code=500)
        self._counter += 1
        user = User(phone_number=phone_number, animal_name=f"Animal{self._counter:03d}")
        return RegisterResult(success=True, user=user, is_existing=False)

    async def approve_user(self, animal_name: str) -> ApprovalResult:
        self.approved.append(animal_name)
        if animal_name in self.fail_approve:
            raise ReservationApiError(f"approve {animal_name} failed", status_code=500)
        return ApprovalResult(success=True)

    async def reserve_court(self, court_id, user_ids, reservation_type="full", option="queue"):
        self.reservations.append((court_id, list(user_ids)))
        if court_id in self.fail_courts:
            raise ReservationApiError(f"reserve {court_id} failed", status_code=502)
        return ReservationResult(success=True, court={"_id": court_id})

    async def list_courts(self) -> list[CourtInfo]:
        if self.fail_listing:
            raise ReservationApiError("listing failed")
        return list(self.courts)

    def reservations_for(self, court_id: str) -> list[list[str]]:
        return [members for court, members in self.reservations if court == court_id]


async def no_sleep(delay: float) -> None:
    return None


def make_users(count: int = 12, *, prefix: str = "User", expires_at: datetime | None = None) -> list[User]:
    expires_at = expires_at or START + timedelta(hours=6)
    return [
        User(
            phone_number=f"{10000 + index}",
            animal_name=f"{prefix}{index:02d}",
            is_approved=True,
            created_at=START,
            expires_at=expires_at,
        )
        for index in range(count)
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(backend) -> StateStore:
    return StateStore(backend, ttl_seconds=6 * 60 * 60, operation_timeout=1.0)


@pytest.fixture
def client() -> FakeReservationClient:
    return FakeReservationClient()


@pytest.fixture
def rotation_settings() -> RotationSettings:
    return RotationSettings(rotation_settle_seconds=0, initial_settle_seconds=0)


@pytest.fixture
def engine(store, client, rotation_settings, clock) -> RotationEngine:
    return RotationEngine(store, client, rotation_settings, clock=clock, sleep=no_sleep)


@pytest.fixture
def pool(client, store, rotation_settings, clock) -> UserPoolManager:
    return UserPoolManager(client, store, rotation_settings, clock=clock)


@pytest.fixture
def sessions(store, client, pool, engine, rotation_settings, clock) -> SessionManager:
    return SessionManager(store, client, pool, engine, rotation_settings, clock=clock, sleep=no_sleep)
