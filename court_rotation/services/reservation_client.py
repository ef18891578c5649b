"""HTTP client for the queue system's registration, approval and court reservation API."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any, Sequence

import httpx

from court_rotation.config import ReservationApiSettings
from court_rotation.domain.models import CourtInfo, User
from court_rotation.logging import logger
from court_rotation.services.exceptions import ReservationApiError
from court_rotation.utils.datetime import Clock, utc_now

DEFAULT_HEADERS = {
    "accept": "application/json, text/plain, */*",
    "accept-language": "en-US,en;q=0.9",
    "content-type": "application/json",
}


@dataclass(slots=True)
class RegisterResult:
    success: bool
    user: User
    is_existing: bool


@dataclass(slots=True)
class ApprovalResult:
    success: bool
    message: str | None = None


@dataclass(slots=True)
class ReservationResult:
    success: bool
    court: dict[str, Any]


def generate_phone_number(rng: random.Random | None = None) -> str:
    """Random five digit phone-number-like identifier."""

    rng = rng or random.Random()
    return str(rng.randint(10000, 99999))


class ReservationClient:
    """Stateless wrapper over the reservation API.

    Every call is a single attempt bounded by the configured timeout. Retrying
    is left to callers, which track their own windows.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: ReservationApiSettings | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._client = http_client
        self._settings = settings or ReservationApiSettings()
        self._clock = clock

    def _headers(self) -> dict[str, str]:
        return {
            **DEFAULT_HEADERS,
            "x-admin-password": self._settings.admin_password.get_secret_value(),
            "Referer": self._settings.referer,
        }

    async def _request(self, name: str, method: str, path: str, payload: dict | None = None) -> dict:
        url = self._settings.endpoint(path)
        try:
            response = await self._client.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self._settings.request_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:500] if exc.response is not None else str(exc)
            status_code = exc.response.status_code if exc.response is not None else None
            logger.warning("reservation_api_http_error", operation=name, status_code=status_code)
            raise ReservationApiError(
                f"{name} failed ({status_code}): {detail}", status_code=status_code
            ) from exc
        except httpx.TimeoutException as exc:
            logger.warning("reservation_api_timeout", operation=name)
            raise ReservationApiError(f"{name} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            logger.warning("reservation_api_request_error", operation=name, error=str(exc))
            raise ReservationApiError(f"{name} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ReservationApiError(f"{name} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise ReservationApiError(f"{name} returned an unexpected payload")
        return data

    async def register_user(self, phone_number: str) -> RegisterResult:
        data = await self._request(
            "register_user", "POST", "register", {"phoneNumber": phone_number}
        )
        if not data.get("success") or not data.get("user"):
            raise ReservationApiError(f"Registration rejected for {phone_number}")
        user_payload = {"phoneNumber": phone_number, **data["user"]}
        user_payload.setdefault("createdAt", self._clock().isoformat())
        try:
            user = User.model_validate(user_payload)
        except ValueError as exc:
            raise ReservationApiError(f"Registration returned a malformed user: {exc}") from exc
        return RegisterResult(
            success=True,
            user=user,
            is_existing=bool(data.get("isExisting", False)),
        )

    async def approve_user(self, animal_name: str) -> ApprovalResult:
        data = await self._request(
            "approve_user", "POST", "admin/users/approve", {"animalName": animal_name}
        )
        if data.get("success") is False:
            raise ReservationApiError(data.get("message") or f"Approval rejected for {animal_name}")
        return ApprovalResult(success=True, message=data.get("message"))

    async def reserve_court(
        self,
        court_id: str,
        user_ids: Sequence[str],
        reservation_type: str = "full",
        option: str = "queue",
    ) -> ReservationResult:
        data = await self._request(
            "reserve_court",
            "POST",
            "reserve",
            {
                "courtId": court_id,
                "userIds": list(user_ids),
                "type": reservation_type,
                "option": option,
            },
        )
        if data.get("success") is False:
            raise ReservationApiError(data.get("message") or f"Reservation rejected for court {court_id}")
        return ReservationResult(success=True, court=data.get("court") or {})

    async def list_courts(self) -> list[CourtInfo]:
        data = await self._request("list_courts", "GET", "courts/all")
        if not data.get("success"):
            raise ReservationApiError("Court listing returned an unsuccessful response")
        return [_court_from_payload(item) for item in data.get("courts") or []]


def _court_from_payload(payload: dict[str, Any]) -> CourtInfo:
    waitlist = int(payload.get("waitlistCount") or 0)
    return CourtInfo(
        id=str(payload.get("_id") or payload.get("id")),
        name=payload.get("name"),
        number=payload.get("courtNumber"),
        is_visible=bool(payload.get("isVisible", True)),
        is_available=bool(payload.get("isAvailable", True)),
        waitlist_count=waitlist,
        description=f"{waitlist} in waitlist" if waitlist > 0 else "Available",
    )


__all__ = [
    "ApprovalResult",
    "RegisterResult",
    "ReservationClient",
    "ReservationResult",
    "generate_phone_number",
]
