"""Tests for the reservation API client."""

from __future__ import annotations

import json
import random
from datetime import datetime, timezone

import httpx
import pytest
from pydantic import SecretStr

from court_rotation.config import ReservationApiSettings
from court_rotation.services.exceptions import ReservationApiError
from court_rotation.services.reservation_client import ReservationClient, generate_phone_number


def _settings() -> ReservationApiSettings:
    return ReservationApiSettings(
        base_url="https://queue.example/api",
        admin_password=SecretStr("letmein"),
        referer="https://front.example/",
        request_timeout_seconds=2,
    )


@pytest.mark.asyncio
async def test_register_user_parses_user_and_sends_admin_headers():
    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url == httpx.URL("https://queue.example/api/register")
        assert request.headers["x-admin-password"] == "letmein"
        assert request.headers["Referer"] == "https://front.example/"
        assert json.loads(request.content) == {"phoneNumber": "12345"}
        return httpx.Response(
            200,
            json={
                "success": True,
                "isExisting": False,
                "user": {"animalName": "Brave Otter", "isApproved": False, "createdAt": "today"},
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings())
        result = await client.register_user("12345")

    assert result.success is True
    assert result.is_existing is False
    assert result.user.animal_name == "Brave Otter"
    assert result.user.phone_number == "12345"
    # Display-formatted dates are tolerated rather than rejected.
    assert result.user.created_at is None


@pytest.mark.asyncio
async def test_register_user_stamps_missing_created_at_from_clock():
    registered_at = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "user": {"animalName": "Quiet Heron"}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings(), clock=lambda: registered_at)
        result = await client.register_user("54321")

    assert result.user.created_at == registered_at
    assert result.is_existing is False

@pytest.mark.asyncio
async def test_reserve_court_posts_full_queue_reservation():
    bodies: list[dict] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/reserve"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "court": {"_id": "c1", "waitlistCount": 2}})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings())
        result = await client.reserve_court("c1", ["A", "B", "C", "D"])

    assert bodies == [{"courtId": "c1", "userIds": ["A", "B", "C", "D"], "type": "full", "option": "queue"}]
    assert result.court["waitlistCount"] == 2


@pytest.mark.asyncio
async def test_non_2xx_raises_reservation_error_with_status():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream asleep")

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings())
        with pytest.raises(ReservationApiError) as excinfo:
            await client.approve_user("Brave Otter")

    assert excinfo.value.status_code == 503
    assert "upstream asleep" in str(excinfo.value)


@pytest.mark.asyncio
async def test_transport_errors_are_wrapped():
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings())
        with pytest.raises(ReservationApiError):
            await client.reserve_court("c1", ["A"])


@pytest.mark.asyncio
async def test_unsuccessful_payload_is_an_error():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "message": "court closed"})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings())
        with pytest.raises(ReservationApiError, match="court closed"):
            await client.reserve_court("c1", ["A"])


@pytest.mark.asyncio
async def test_list_courts_normalizes_payload():
    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/api/courts/all"
        return httpx.Response(
            200,
            json={
                "success": True,
                "courts": [
                    {"_id": "c1", "name": "One", "courtNumber": 1, "isVisible": True, "isAvailable": True, "waitlistCount": 3},
                    {"_id": "c2", "name": "Two", "courtNumber": 2, "isVisible": False, "isAvailable": True, "waitlistCount": 0},
                ],
            },
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as http:
        client = ReservationClient(http, settings=_settings())
        courts = await client.list_courts()

    assert [court.id for court in courts] == ["c1", "c2"]
    assert courts[0].number == 1
    assert courts[0].description == "3 in waitlist"
    assert courts[1].description == "Available"
    assert courts[1].is_visible is False




def test_generate_phone_number_is_five_digits():
    rng = random.Random(7)
    numbers = {generate_phone_number(rng) for _ in range(50)}
    assert all(len(number) == 5 and number.isdigit() for number in numbers)
    assert all(10000 <= int(number) <= 99999 for number in numbers)
