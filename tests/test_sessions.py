from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import START, make_users
from court_rotation.domain.results import TickAction
from court_rotation.services.exceptions import (
    ConflictError,
    InvalidRequest,
    PartialProvisioning,
    ReservationApiError,
    StorageError,
)


@pytest.mark.asyncio
async def test_start_single_reserves_all_groups_and_persists(sessions, store, client):
    session = await sessions.start_single("court-a", 2)

    assert len(client.registered) == 12
    assert client.reservations == [("court-a", session.group_names(index)) for index in range(3)]
    assert session.court_number == 1
    assert session.court_name == "Court A"
    assert session.current_group_index == 0
    assert session.end_time == START + timedelta(hours=2)
    assert session.session_id.startswith(f"session_{int(START.timestamp() * 1000)}_")
    assert await store.single.load() == session


@pytest.mark.asyncio
async def test_session_lifecycle_rotates_then_expires(sessions, engine, store, client, clock):
    session = await sessions.start_single("court-a", 2)

    clock.advance(minutes=31)
    rotated = await engine.tick_single()
    assert rotated.action is TickAction.ROTATED
    assert client.reservations[-1] == ("court-a", session.group_names(1))
    assert (await store.single.load()).current_group_index == 1

    clock.advance(minutes=150)
    stopped = await engine.tick_single()
    assert stopped.action is TickAction.STOPPED
    assert await store.single.load() is None


@pytest.mark.asyncio
async def test_start_conflicts_with_running_session(sessions, store, client):
    first = await sessions.start_single("court-a", 2)
    calls_before = list(client.reservations)

    with pytest.raises(ConflictError) as excinfo:
        await sessions.start_single("court-b", 1)

    assert excinfo.value.session.session_id == first.session_id
    assert client.reservations == calls_before
    assert await store.single.load() == first


@pytest.mark.asyncio
async def test_scopes_do_not_conflict_with_each_other(sessions):
    await sessions.start_single("court-a", 2)
    multi = await sessions.start_multi(["court-b"], 2)
    assert len(multi.courts) == 1


@pytest.mark.asyncio
async def test_concurrent_start_is_rejected_while_lock_held(sessions, store):
    async with store.lock("start:single"):
        with pytest.raises(ConflictError):
            await sessions.start_single("court-a", 2)


@pytest.mark.asyncio
async def test_restart_after_expiry_reuses_users_and_drops_old_record(sessions, store, backend, client, clock):
    first = await sessions.start_single("court-a", 1)
    clock.advance(hours=2)

    second = await sessions.start_single("court-a", 1)

    assert len(client.registered) == 12
    assert [user.animal_name for user in second.users] == [user.animal_name for user in first.users]
    assert await backend.get(f"automation:state:{first.session_id}") is None
    assert (await store.single.load()).session_id == second.session_id


@pytest.mark.asyncio
async def test_failed_initial_reservation_persists_nothing(sessions, store, client):
    client.fail_courts.add("court-a")

    with pytest.raises(ReservationApiError):
        await sessions.start_single("court-a", 2)

    assert await store.single.load() is None
    assert len(client.reservations) == 1


@pytest.mark.asyncio
async def test_partial_provisioning_aborts_start(sessions, store, client):
    client.fail_approve.add("Animal005")

    with pytest.raises(PartialProvisioning):
        await sessions.start_single("court-a", 2)

    assert client.reservations == []
    assert await store.single.load() is None


@pytest.mark.asyncio
async def test_missing_court_metadata_is_tolerated(sessions, client):
    client.fail_listing = True
    session = await sessions.start_single("court-a", 2)
    assert session.court_number is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("court_id", "hours"),
    [("", 2), ("court-a", 0), ("court-a", -1), ("court-a", 25)],
)
async def test_start_single_rejects_invalid_input(sessions, client, court_id, hours):
    with pytest.raises(InvalidRequest):
        await sessions.start_single(court_id, hours)
    assert client.registered == []


@pytest.mark.asyncio
async def test_start_multi_gives_each_court_its_own_users(sessions, store, client):
    session = await sessions.start_multi(["court-a", "court-b"], 2)

    names = [user.animal_name for user in session.users]
    assert len(names) == 24
    assert len(set(names)) == 24
    assert [court.court_number for court in session.courts] == [1, 2]
    assert len(client.reservations_for("court-a")) == 3
    assert len(client.reservations_for("court-b")) == 3
    assert (await store.multi.load()).session_id == session.session_id


@pytest.mark.asyncio
async def test_start_multi_rejects_duplicates(sessions):
    with pytest.raises(InvalidRequest):
        await sessions.start_multi(["court-a", "court-a"], 2)
    with pytest.raises(InvalidRequest):
        await sessions.start_multi([], 2)


@pytest.mark.asyncio
async def test_initial_reservation_needs_a_full_pool(sessions):
    with pytest.raises(InvalidRequest):
        await sessions.initial_reservation("court-a", [])


@pytest.mark.asyncio
async def test_stop_removes_every_session(sessions, store):
    await sessions.start_single("court-a", 2)
    await sessions.start_multi(["court-b"], 2)

    result = await sessions.stop()

    assert result.success is True
    assert [item.scope for item in result.stopped] == ["multi", "single"]
    assert all(item.was_active for item in result.stopped)
    assert await store.single.load() is None
    assert await store.multi.load() is None


@pytest.mark.asyncio
async def test_stop_without_sessions_is_a_no_op(sessions):
    result = await sessions.stop()
    assert result.success is True
    assert result.stopped == []
    assert "nothing to stop" in result.message


@pytest.mark.asyncio
async def test_status_reports_running_session(sessions, clock):
    session = await sessions.start_single("court-a", 2)
    clock.advance(minutes=10)

    report = await sessions.status()

    assert report.active is True
    assert report.multi.state == "none"
    view = report.single
    assert view.state == "running"
    assert view.time_remaining == "1h 50m"
    assert view.total_users == 12
    court = view.courts[0]
    assert court.current_group == session.group_names(0)
    assert court.waitlist_groups == [session.group_names(1), session.group_names(2)]
    assert court.minutes_to_next_rotation == 20
    assert court.next_rotation_time == START + timedelta(minutes=30)
    assert sorted(court.user_groups) == ["group0", "group1", "group2"]


@pytest.mark.asyncio
async def test_status_cleans_up_expired_session(sessions, store, clock):
    session = await sessions.start_single("court-a", 1)
    clock.advance(minutes=61)

    view = await sessions.scope_status("single")

    assert view.state == "expired"
    assert view.session_id == session.session_id
    assert await store.single.load() is None


@pytest.mark.asyncio
async def test_status_distinguishes_unreachable_store(sessions, backend, monkeypatch):
    async def refuse(key):
        raise StorageError("connection refused")

    monkeypatch.setattr(backend, "get", refuse)
    report = await sessions.status()

    assert report.single.state == "unavailable"
    assert report.single.available is False
    assert report.active is False
    assert await sessions.is_active("single") is False


@pytest.mark.asyncio
async def test_initial_reservation_returns_first_group_result(sessions, client):
    result = await sessions.initial_reservation("court-a", make_users())

    assert result.court == {"_id": "court-a"}
    assert [members for _, members in client.reservations] == [
        [f"User{index:02d}" for index in range(start, start + 4)] for start in (0, 4, 8)
    ]


@pytest.mark.asyncio
async def test_start_aborts_when_start_lock_passes_to_another_start(
    sessions, pool, store, backend, client, monkeypatch
):
    original = pool.acquire_pool

    async def provision_then_lose_lock(*args, **kwargs):
        users = await original(*args, **kwargs)
        # The key lapsed during provisioning and a second start claimed it.
        await backend.set("automation:lock:start:multi", "other-start", 600)
        return users

    monkeypatch.setattr(pool, "acquire_pool", provision_then_lose_lock)

    with pytest.raises(ConflictError):
        await sessions.start_multi(["court-a", "court-b"], 2)

    assert client.reservations == []
    assert await store.multi.load() is None
    assert await backend.get("automation:lock:start:multi") == "other-start"
