"""Service surface consumed by the HTTP layer: structured results, never bare exceptions."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from court_rotation.domain.models import CamelModel
from court_rotation.domain.results import CourtListing, OperationResult, TickAction
from court_rotation.logging import logger
from court_rotation.services.exceptions import (
    ConflictError,
    InvalidRequest,
    PartialProvisioning,
    ReservationApiError,
    StorageError,
)
from court_rotation.services.reservation_client import ReservationClient
from court_rotation.services.scheduler import Scheduler
from court_rotation.services.sessions import SessionManager


class StartRequest(CamelModel):
    court_id: str | None = None
    court_ids: list[str] | None = None
    duration_hours: float | None = None


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json", by_alias=True)


class AutomationService:
    def __init__(
        self,
        sessions: SessionManager,
        scheduler: Scheduler,
        client: ReservationClient,
    ) -> None:
        self.sessions = sessions
        self.scheduler = scheduler
        self.client = client

    async def start(self, payload: dict[str, Any] | StartRequest) -> OperationResult:
        try:
            request = (
                payload if isinstance(payload, StartRequest) else StartRequest.model_validate(payload)
            )
        except ValidationError as exc:
            return OperationResult(
                success=False, status_code=400, message="Invalid request", error=str(exc)
            )

        try:
            if request.court_ids:
                session = await self.sessions.start_multi(request.court_ids, request.duration_hours)
                scope = "multi"
            elif request.court_id:
                session = await self.sessions.start_single(request.court_id, request.duration_hours)
                scope = "single"
            else:
                raise InvalidRequest("courtId or courtIds is required")
        except InvalidRequest as exc:
            return OperationResult(success=False, status_code=400, message="Invalid request", error=str(exc))
        except ConflictError as exc:
            data = {"currentState": _dump(exc.session)} if exc.session is not None else {}
            return OperationResult(
                success=False,
                status_code=409,
                message="Automation is already running",
                error=str(exc),
                data=data,
            )
        except PartialProvisioning as exc:
            logger.error("start_partial_provisioning", produced=exc.produced, required=exc.required)
            return OperationResult(
                success=False,
                status_code=500,
                message=f"Failed to create enough users. Only created {exc.produced}/{exc.required} users.",
                error=str(exc),
                data={"partialUsers": [_dump(user) for user in exc.users]},
            )
        except (ReservationApiError, StorageError) as exc:
            logger.error("start_failed", error=str(exc))
            return OperationResult(
                success=False, status_code=500, message="Failed to start automation", error=str(exc)
            )

        return OperationResult(
            success=True,
            message=f"Automation started for {request.duration_hours:g} hours",
            data={"sessionId": session.session_id, "type": scope, "state": _dump(session)},
        )

    async def stop(self) -> OperationResult:
        try:
            result = await self.sessions.stop()
        except StorageError as exc:
            logger.error("stop_failed", error=str(exc))
            return OperationResult(
                success=False, status_code=500, message="Failed to stop automation", error=str(exc)
            )
        return OperationResult(success=result.success, message=result.message, data=_dump(result))

    async def status(self) -> OperationResult:
        report = await self.sessions.status()
        message = "Automation running" if report.active else "No automation running"
        return OperationResult(success=True, message=message, data=_dump(report))

    async def tick(self) -> OperationResult:
        report = await self.scheduler.trigger()
        failed = TickAction.ERROR in report.actions
        return OperationResult(
            success=not failed,
            status_code=500 if failed else 200,
            message="; ".join([report.single.message, report.multi.message]),
            data=_dump(report),
        )

    async def list_courts(self) -> OperationResult:
        try:
            courts = await self.client.list_courts()
        except ReservationApiError as exc:
            return OperationResult(
                success=False, status_code=500, message="Failed to fetch courts", error=str(exc)
            )
        available = [court for court in courts if court.is_visible and court.is_available]
        listing = CourtListing(
            courts=available,
            total_courts=len(available),
            total_available_courts=len(available),
            total_all_courts=len(courts),
        )
        return OperationResult(success=True, message=f"{len(available)} courts available", data=_dump(listing))


__all__ = ["AutomationService", "StartRequest"]
