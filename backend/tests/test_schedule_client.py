from __future__ import annotations

import httpx
import pytest

from careplan_core.errors import NotFoundError, UpstreamFailure, ValidationError
from careplan_tools.schedule_client import ScheduleClient


@pytest.fixture
def schedule_client(client, auth_headers, seeded_schedule) -> ScheduleClient:
    seeded_schedule("user-a")
    schedule_client = ScheduleClient(client, headers=auth_headers("user-a"), session_id="client-session")
    schedule_client.load("2030-01-15")
    return schedule_client


def test_update_replaces_cache_with_server_copy(schedule_client):
    activity = schedule_client.update_activity(2, {"title": "Late breakfast"})
    assert activity["title"] == "Late breakfast"
    assert schedule_client.activity(2)["title"] == "Late breakfast"


def test_failed_update_rolls_back_cached_activity(schedule_client, backend_module, monkeypatch):
    before = schedule_client.activity(2)

    def _reject(*_args, **_kwargs):
        raise NotFoundError("Schedule not found")

    monkeypatch.setattr(backend_module.container.store, "update_activity", _reject)
    with pytest.raises(NotFoundError):
        schedule_client.update_activity(2, {"title": "Late breakfast", "details": {"portions": "Small"}})
    assert schedule_client.activity(2) == before


def test_invalid_update_never_touches_cache(schedule_client):
    before = schedule_client.activity(2)
    with pytest.raises(ValidationError):
        schedule_client.update_activity(2, {"type": "workout"})
    assert schedule_client.activity(2) == before


def test_unreachable_backend_rolls_back_reorder():
    def _down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    offline = ScheduleClient(httpx.Client(transport=httpx.MockTransport(_down), base_url="http://careplan"))
    offline.schedule = {
        "id": 1,
        "user_id": "user-a",
        "date": "2030-01-15",
        "activities": [
            {"id": 1, "type": "meal", "title": "A", "time": "08:00", "duration": 30,
             "description": "", "completed": False, "details": None},
            {"id": 2, "type": "meal", "title": "B", "time": "12:00", "duration": 30,
             "description": "", "completed": False, "details": None},
        ],
    }
    with pytest.raises(UpstreamFailure):
        offline.reorder([2, 1])
    assert [activity["id"] for activity in offline.schedule["activities"]] == [1, 2]


def test_reorder_uses_server_times(schedule_client):
    ids = [activity["id"] for activity in schedule_client.schedule["activities"]]
    activities = schedule_client.reorder([ids[2], ids[0], ids[1], *ids[3:]])
    assert [activity["time"] for activity in activities[:3]] == ["09:00", "10:15", "10:35"]
    assert schedule_client.schedule["activities"] == activities


def test_add_and_delete_keep_cache_in_sync(schedule_client):
    added = schedule_client.add_activity({"type": "yoga", "title": "Stretch", "time": "06:30", "duration": 15})
    assert schedule_client.schedule["activities"][0]["id"] == added["id"]
    schedule_client.delete_activity(added["id"])
    assert added["id"] not in [activity["id"] for activity in schedule_client.schedule["activities"]]


def test_full_completion_loop(schedule_client):
    opening = schedule_client.start_completion(3, "workout")
    assert opening

    for answer in ("Felt strong", "A little tired", "Energized now"):
        reply = schedule_client.send(answer)
    assert reply["isComplete"] is True

    activity = schedule_client.finish_completion()
    assert activity["completed"] is True
    assert activity["activityLog"]["notes"] == schedule_client.report.summary
    assert schedule_client.activity(3)["completed"] is True
    with pytest.raises(NotFoundError):
        schedule_client.send("hello again")


def test_failed_completion_write_leaves_session_open(schedule_client, backend_module, monkeypatch):
    schedule_client.start_completion(3, "workout")
    for answer in ("Felt strong", "A little tired", "Energized now"):
        schedule_client.send(answer)

    real_update = backend_module.container.store.update_activity

    def _reject(*_args, **_kwargs):
        raise NotFoundError("Schedule not found")

    monkeypatch.setattr(backend_module.container.store, "update_activity", _reject)
    with pytest.raises(NotFoundError):
        schedule_client.finish_completion()
    assert schedule_client.activity(3)["completed"] is False
    assert schedule_client.send("still here")["isComplete"] is True

    monkeypatch.setattr(backend_module.container.store, "update_activity", real_update)
    assert schedule_client.finish_completion()["completed"] is True


def test_finish_without_report_is_rejected(schedule_client):
    schedule_client.start_completion(3, "workout")
    with pytest.raises(ValidationError):
        schedule_client.finish_completion()
