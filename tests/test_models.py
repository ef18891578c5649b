from __future__ import annotations

import random
import re
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import START, make_users
from court_rotation.domain.models import CourtState, User, new_session_id, next_group_index, split_groups
from court_rotation.utils.datetime import ceil_minutes, format_remaining


def test_pool_splits_into_three_groups_in_order():
    users = make_users()
    groups = split_groups(users)
    assert [len(group) for group in groups] == [4, 4, 4]
    assert groups[2][0].animal_name == "User08"
    assert [next_group_index(index) for index in range(3)] == [1, 2, 0]


def test_court_state_requires_twelve_users():
    with pytest.raises(ValidationError):
        CourtState(court_id="court-a", users=make_users(11), last_rotation_time=START)
    with pytest.raises(ValidationError):
        CourtState(court_id="court-a", users=make_users(), last_rotation_time=START, current_group_index=3)


def test_waitlist_follows_current_group():
    court = CourtState(court_id="court-a", users=make_users(), last_rotation_time=START, current_group_index=2)
    assert court.waitlist_group_indexes == [0, 1]
    assert court.next_rotation_time(timedelta(minutes=30)) == START + timedelta(minutes=30)


def test_court_state_reads_camel_case_and_naive_timestamps():
    court = CourtState.model_validate(
        {
            "courtId": "court-a",
            "users": [user.model_dump(by_alias=True) for user in make_users()],
            "currentGroupIndex": 1,
            "lastRotationTime": "2026-03-01T12:00:00",
        }
    )
    assert court.last_rotation_time == START
    assert court.last_rotation_time.tzinfo is timezone.utc


def test_user_eligibility():
    user = User(phone_number="1", animal_name="Otter", is_approved=True, expires_at="2026-03-01T18:00:00Z")
    assert user.is_eligible(START) is True
    assert user.is_eligible(START + timedelta(hours=6)) is False
    assert user.model_copy(update={"is_approved": False}).is_eligible(START) is False
    assert User(phone_number="2", animal_name="Heron", is_approved=True).is_eligible(START) is False


def test_session_id_format():
    session_id = new_session_id(datetime(2026, 3, 1, tzinfo=timezone.utc), random.Random(1))
    assert re.fullmatch(r"session_\d{13}_[a-z0-9]{9}", session_id)


def test_duration_helpers():
    assert ceil_minutes(timedelta(seconds=61)) == 2
    assert ceil_minutes(timedelta(seconds=-5)) == 0
    assert format_remaining(timedelta(hours=1, minutes=50, seconds=30)) == "1h 50m"
    assert format_remaining(timedelta(seconds=-1)) == "0h 0m"
