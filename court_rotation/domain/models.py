"""Pydantic records persisted in the state store and exchanged with the reservation API."""

from __future__ import annotations

import random
import string
from datetime import datetime, timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from court_rotation.utils.datetime import ensure_utc

GROUP_SIZE = 4
GROUP_COUNT = 3
POOL_SIZE = GROUP_SIZE * GROUP_COUNT

Scope = Literal["single", "multi"]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class User(CamelModel):
    phone_number: str
    animal_name: str
    is_approved: bool = False
    created_at: datetime | None = None
    expires_at: datetime | None = None

    @field_validator("created_at", "expires_at", mode="before")
    @classmethod
    def _lenient_timestamp(cls, value):
        # The reservation API sometimes sends display-formatted dates here.
        if isinstance(value, str):
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        return value

    @field_validator("created_at", "expires_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    def is_eligible(self, now: datetime) -> bool:
        """Approved and not yet expired; users without an expiry are never reused."""

        return self.is_approved and self.expires_at is not None and self.expires_at > now


def split_groups(users: list[User]) -> list[list[User]]:
    """Partition a pool into consecutive groups of ``GROUP_SIZE`` in pool order."""

    return [users[index : index + GROUP_SIZE] for index in range(0, len(users), GROUP_SIZE)]


def next_group_index(current: int) -> int:
    return (current + 1) % GROUP_COUNT


class CourtStatus(str, Enum):
    ACTIVE = "active"
    FAILED = "failed"


class CourtPhase(str, Enum):
    """Per-court rotation state machine."""

    ACTIVE = "active"
    ROTATING = "rotating"
    EXPIRED = "expired"
    FAILED = "failed"


class CourtState(CamelModel):
    court_id: str
    court_number: int | None = None
    court_name: str | None = None
    users: list[User]
    current_group_index: int = Field(default=0, ge=0, lt=GROUP_COUNT)
    last_rotation_time: datetime
    status: CourtStatus = CourtStatus.ACTIVE
    last_error: str | None = None

    @field_validator("users")
    @classmethod
    def _full_pool(cls, users: list[User]) -> list[User]:
        if len(users) != POOL_SIZE:
            raise ValueError(f"a court needs exactly {POOL_SIZE} users, got {len(users)}")
        return users

    @field_validator("last_rotation_time")
    @classmethod
    def _rotation_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def groups(self) -> list[list[User]]:
        return split_groups(self.users)

    def group_names(self, index: int) -> list[str]:
        return [user.animal_name for user in self.groups[index]]

    @property
    def current_group(self) -> list[str]:
        return self.group_names(self.current_group_index)

    @property
    def waitlist_group_indexes(self) -> list[int]:
        """Waiting groups in the order they will take the court."""

        first = next_group_index(self.current_group_index)
        return [first, next_group_index(first)]

    def next_rotation_time(self, interval: timedelta) -> datetime:
        return self.last_rotation_time + interval


class _SessionWindow:
    """Lifetime checks shared by single and multi sessions."""

    def is_expired(self, now: datetime) -> bool:
        return now >= self.end_time

    def is_live(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)


class Session(CourtState, _SessionWindow):
    """Single-court automation session with the court state inlined."""

    session_id: str
    start_time: datetime
    end_time: datetime
    is_active: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def _window_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def courts(self) -> list[CourtState]:
        return [self]


class MultiSession(CamelModel, _SessionWindow):
    session_id: str
    courts: list[CourtState]
    start_time: datetime
    end_time: datetime
    is_active: bool = True

    @field_validator("start_time", "end_time")
    @classmethod
    def _window_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def users(self) -> list[User]:
        return [user for court in self.courts for user in court.users]

    def court(self, court_id: str) -> CourtState | None:
        return next((court for court in self.courts if court.court_id == court_id), None)


class CourtInfo(CamelModel):
    """Court metadata as exposed by the reservation API's court listing."""

    id: str
    name: str | None = None
    number: int | None = None
    is_visible: bool = True
    is_available: bool = True
    waitlist_count: int = 0
    description: str | None = None


_SESSION_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def new_session_id(now: datetime, rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    suffix = "".join(rng.choice(_SESSION_SUFFIX_ALPHABET) for _ in range(9))
    return f"session_{int(now.timestamp() * 1000)}_{suffix}"


__all__ = [
    "GROUP_COUNT",
    "GROUP_SIZE",
    "POOL_SIZE",
    "CamelModel",
    "CourtInfo",
    "CourtPhase",
    "CourtState",
    "CourtStatus",
    "MultiSession",
    "Scope",
    "Session",
    "User",
    "new_session_id",
    "next_group_index",
    "split_groups",
]
