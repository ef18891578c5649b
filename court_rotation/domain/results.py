"""Structured outcomes returned by the engine, session manager and service surface."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import Field

from court_rotation.domain.models import CamelModel, CourtInfo, Scope


class TickAction(str, Enum):
    NONE = "none"
    WAITING = "waiting"
    ROTATED = "rotated"
    STOPPED = "stopped"
    ERROR = "error"


class CourtTickResult(CamelModel):
    court_id: str
    court_number: int | None = None
    action: TickAction
    current_group: int | None = None
    current_users: list[str] = Field(default_factory=list)
    minutes_to_next_rotation: int | None = None
    next_rotation_time: datetime | None = None
    error: str | None = None


class TickResult(CamelModel):
    scope: Scope
    action: TickAction
    message: str
    session_id: str | None = None
    reason: str | None = None
    courts: list[CourtTickResult] = Field(default_factory=list)


class TickReport(CamelModel):
    """One scheduler pass over both scopes."""

    single: TickResult
    multi: TickResult

    @property
    def actions(self) -> list[TickAction]:
        return [self.single.action, self.multi.action]


class CourtStatusView(CamelModel):
    court_id: str
    court_number: int | None = None
    court_name: str | None = None
    status: str
    current_group_index: int
    current_group: list[str]
    waitlist_groups: list[list[str]]
    user_groups: dict[str, list[str]]
    last_rotation_time: datetime
    next_rotation_time: datetime
    minutes_to_next_rotation: int
    last_error: str | None = None


SessionState = Literal["running", "inactive", "expired", "none", "unavailable"]


class SessionStatusView(CamelModel):
    scope: Scope
    state: SessionState
    active: bool = False
    available: bool = True
    message: str
    session_id: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    time_remaining: str | None = None
    total_users: int = 0
    courts: list[CourtStatusView] = Field(default_factory=list)


class StatusReport(CamelModel):
    single: SessionStatusView
    multi: SessionStatusView

    @property
    def active(self) -> bool:
        return self.single.active or self.multi.active


class StoppedSession(CamelModel):
    scope: Scope
    session_id: str
    courts_count: int
    was_active: bool


class StopResult(CamelModel):
    success: bool
    message: str
    stopped: list[StoppedSession] = Field(default_factory=list)
    stopped_at: datetime | None = None


class OperationResult(CamelModel):
    """Service-surface envelope: an HTTP-like status plus a JSON-ready payload."""

    success: bool
    status_code: int = 200
    message: str
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class CourtListing(CamelModel):
    courts: list[CourtInfo]
    total_courts: int
    total_available_courts: int
    total_all_courts: int


__all__ = [
    "CourtListing",
    "CourtStatusView",
    "CourtTickResult",
    "OperationResult",
    "SessionState",
    "SessionStatusView",
    "StatusReport",
    "StopResult",
    "StoppedSession",
    "TickAction",
    "TickReport",
    "TickResult",
]
