"""Domain-specific exceptions."""

from __future__ import annotations

from typing import Any, Sequence


class ServiceError(Exception):
    pass


class InvalidRequest(ServiceError):
    pass


class ReservationApiError(ServiceError):
    """An external reservation call failed (network, non-2xx, timeout or ``success: false``)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PartialProvisioning(ServiceError):
    """Fewer users than required could be registered and approved."""

    def __init__(self, produced: int, required: int, users: Sequence[Any] = ()) -> None:
        self.produced = produced
        self.required = required
        self.users = list(users)
        super().__init__(f"Only provisioned {produced}/{required} users.")


class ConflictError(ServiceError):
    """A session of the requested scope is already running."""

    def __init__(self, scope: str, session: Any | None = None) -> None:
        self.scope = scope
        self.session = session
        super().__init__(f"Automation is already running ({scope}).")


class ExpiredSession(ServiceError):
    def __init__(self, scope: str, session_id: str) -> None:
        self.scope = scope
        self.session_id = session_id
        super().__init__(f"Session {session_id} ({scope}) has expired.")


class StorageError(ServiceError):
    pass


__all__ = [
    "ConflictError",
    "ExpiredSession",
    "InvalidRequest",
    "PartialProvisioning",
    "ReservationApiError",
    "ServiceError",
    "StorageError",
]
