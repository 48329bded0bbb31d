from __future__ import annotations

import json

from fastapi.testclient import TestClient


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def test_requires_authorization(client):
    response = client.get("/daily-schedule", params={"date": "2030-01-15"})
    assert response.status_code == 401
    assert response.json() == {"error": "Missing Authorization", "code": "unauthorized", "success": False}


def test_rejects_invalid_trusted_user_id(client):
    response = client.get("/daily-schedule", headers={"X-User-Id": "bad id!"}, params={"date": "2030-01-15"})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid X-User-Id", "code": "validation_error", "success": False}


def test_schedule_requires_treatment_plan(client, auth_headers):
    response = client.get("/daily-schedule", headers=auth_headers("user-a"), params={"date": "2030-01-15"})
    assert response.status_code == 404
    assert response.json() == {"error": "No treatment plan found", "code": "not_found", "success": False}


def test_schedule_created_lazily_from_default_day(seeded_schedule):
    schedule = seeded_schedule("user-a")
    assert schedule["user_id"] == "user-a"
    assert schedule["date"] == "2030-01-15"
    assert [activity["id"] for activity in schedule["activities"]] == list(range(1, 10))
    assert all(activity["completed"] is False for activity in schedule["activities"])
    assert all(activity["details"]["benefits"] for activity in schedule["activities"])


def test_past_schedule_starts_completed(seeded_schedule):
    schedule = seeded_schedule("user-a", "2020-03-01")
    assert all(activity["completed"] for activity in schedule["activities"])


def test_second_read_returns_same_schedule(client, auth_headers, seeded_schedule):
    first = seeded_schedule("user-a")
    second = client.get("/daily-schedule", headers=auth_headers("user-a"), params={"date": "2030-01-15"}).json()
    assert first == second


def test_lazy_creation_can_be_disabled(backend_module, monkeypatch, auth_headers, sample_plan):
    monkeypatch.setenv("CAREPLAN_LAZY_SCHEDULES", "false")
    backend_module.container.lazy_schedules = backend_module._env_flag("CAREPLAN_LAZY_SCHEDULES", True)
    with TestClient(backend_module.app) as client:
        client.post("/treatment-plans", headers=auth_headers("user-a"), json=sample_plan)
        response = client.get("/daily-schedule", headers=auth_headers("user-a"), params={"date": "2030-01-15"})
    assert response.status_code == 404
    assert response.json()["error"] == "Schedule not found"


def test_invalid_date_rejected(client, auth_headers, sample_plan):
    client.post("/treatment-plans", headers=auth_headers("user-a"), json=sample_plan)
    response = client.get("/daily-schedule", headers=auth_headers("user-a"), params={"date": "15/01/2030"})
    assert response.status_code == 400


def test_reorder_applies_buffer_and_order(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    ids = [activity["id"] for activity in schedule["activities"]]
    new_order = [ids[2], ids[0], ids[1], *ids[3:]]

    response = client.patch(
        "/daily-schedule",
        headers=auth_headers("user-a"),
        json={"scheduleId": schedule["id"], "reorder": True, "activities": [{"id": item} for item in new_order]},
    )

    assert response.status_code == 200
    activities = response.json()["activities"]
    assert [activity["id"] for activity in activities] == new_order
    assert [activity["time"] for activity in activities[:3]] == ["09:00", "10:15", "10:35"]
    for previous, current in zip(activities, activities[1:]):
        assert _minutes(current["time"]) >= _minutes(previous["time"]) + previous["duration"] + 15

    stored = client.get("/daily-schedule", headers=auth_headers("user-a"), params={"date": "2030-01-15"}).json()
    assert [activity["id"] for activity in stored["activities"]] == new_order


def test_reorder_rejects_id_mismatch(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    ids = [activity["id"] for activity in schedule["activities"]]
    for bad in (ids[:-1], [*ids[:-1], ids[0]], [*ids, 99]):
        response = client.patch(
            "/daily-schedule",
            headers=auth_headers("user-a"),
            json={"scheduleId": schedule["id"], "reorder": True, "activities": bad},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Activity mismatch"


def test_patch_merges_details_without_losing_siblings(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    meal = next(activity for activity in schedule["activities"] if activity["type"] == "meal")
    before = meal["details"]["benefits"]

    response = client.patch(
        "/daily-schedule",
        headers=auth_headers("user-a"),
        json={
            "scheduleId": schedule["id"],
            "activityId": meal["id"],
            "updates": {"details": {"benefits": {"treatmentGoals": ["Lower fasting glucose"]}}},
        },
    )

    assert response.status_code == 200
    benefits = response.json()["activity"]["details"]["benefits"]
    assert benefits["treatmentGoals"] == ["Lower fasting glucose"]
    assert benefits["conditionSpecific"] == before["conditionSpecific"]
    assert benefits["personalizedTips"] == before["personalizedTips"]
    assert response.json()["activity"]["details"]["portions"] == meal["details"]["portions"]


def _strip_benefits(backend_module, schedule_id: int, activity_id: int, details: dict) -> None:
    with backend_module.container.db.connection() as conn:
        row = conn.execute("SELECT activities_json FROM daily_schedules WHERE id = ?", (schedule_id,)).fetchone()
        activities = json.loads(row["activities_json"])
        for activity in activities:
            if activity["id"] == activity_id:
                activity["details"] = details
        conn.execute(
            "UPDATE daily_schedules SET activities_json = ? WHERE id = ?",
            (json.dumps(activities), schedule_id),
        )


def test_patch_on_details_stored_without_benefits_keeps_what_was_shown(
    backend_module, client, auth_headers, seeded_schedule
):
    schedule = seeded_schedule("user-a")
    headers = auth_headers("user-a")
    medication = next(activity for activity in schedule["activities"] if activity["type"] == "medication")
    _strip_benefits(
        backend_module,
        schedule["id"],
        medication["id"],
        {"timing": "empty_stomach", "sideEffects": ["Dry mouth"]},
    )

    shown = client.get("/daily-schedule", headers=headers, params={"date": "2030-01-15"}).json()
    shown_details = next(activity for activity in shown["activities"] if activity["id"] == medication["id"])["details"]
    assert shown_details["timing"] == "empty_stomach"
    assert shown_details["sideEffects"] == ["Dry mouth"]
    assert shown_details["benefits"]["conditionSpecific"]

    response = client.patch(
        "/daily-schedule",
        headers=headers,
        json={
            "scheduleId": schedule["id"],
            "activityId": medication["id"],
            "updates": {"details": {"benefits": {"treatmentGoals": ["Steadier mornings"]}}},
        },
    )

    assert response.status_code == 200
    details = response.json()["activity"]["details"]
    assert details["timing"] == "empty_stomach"
    assert details["sideEffects"] == ["Dry mouth"]
    assert details["benefits"]["treatmentGoals"] == ["Steadier mornings"]
    for key in ("conditionSpecific", "personalizedTips", "keyMetrics"):
        assert details["benefits"][key] == shown_details["benefits"][key]


def test_patch_validation_and_missing_fields(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    headers = auth_headers("user-a")

    missing = client.patch("/daily-schedule", headers=headers, json={"scheduleId": schedule["id"]})
    assert missing.status_code == 400
    assert missing.json()["error"] == "Missing required fields"

    bad_type = client.patch(
        "/daily-schedule",
        headers=headers,
        json={"scheduleId": schedule["id"], "activityId": 1, "updates": {"type": "meal"}},
    )
    assert bad_type.status_code == 400

    absent = client.patch(
        "/daily-schedule",
        headers=headers,
        json={"scheduleId": schedule["id"], "activityId": 404, "updates": {"title": "x"}},
    )
    assert absent.status_code == 404
    assert absent.json()["error"] == "Activity not found"

    no_schedule = client.patch(
        "/daily-schedule",
        headers=headers,
        json={"scheduleId": 9999, "activityId": 1, "updates": {"title": "x"}},
    )
    assert no_schedule.status_code == 404


def test_add_activity_generates_details_and_keeps_time_order(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    response = client.post(
        "/daily-schedule",
        headers=auth_headers("user-a"),
        json={
            "scheduleId": schedule["id"],
            "activity": {
                "type": "treatment",
                "title": "Herbal tonic",
                "time": "11:30",
                "duration": 10,
                "description": "Take with warm water",
            },
        },
    )
    assert response.status_code == 200
    activity = response.json()["activity"]
    assert activity["id"] == 10
    assert activity["details"]["protocol"] == "Gymnema"

    stored = client.get("/daily-schedule", headers=auth_headers("user-a"), params={"date": "2030-01-15"}).json()
    times = [item["time"] for item in stored["activities"]]
    assert times == sorted(times)
    assert 10 in [item["id"] for item in stored["activities"]]


def test_add_activity_rejects_bad_duration(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    response = client.post(
        "/daily-schedule",
        headers=auth_headers("user-a"),
        json={
            "scheduleId": schedule["id"],
            "activity": {"type": "workout", "title": "Marathon", "time": "06:00", "duration": 300},
        },
    )
    assert response.status_code == 400


def test_delete_activity(client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    headers = auth_headers("user-a")
    body = {"scheduleId": schedule["id"], "activityId": 1}

    assert client.request("DELETE", "/daily-schedule", headers=headers, json=body).status_code == 200
    again = client.request("DELETE", "/daily-schedule", headers=headers, json=body)
    assert again.status_code == 404


def test_range_lists_schedules_in_date_order(client, auth_headers, seeded_schedule):
    seeded_schedule("user-a", "2030-01-16")
    seeded_schedule("user-a", "2030-01-14")
    response = client.get(
        "/daily-schedule/range",
        headers=auth_headers("user-a"),
        params={"startDate": "2030-01-14", "endDate": "2030-01-20"},
    )
    assert response.status_code == 200
    assert [item["date"] for item in response.json()["schedules"]] == ["2030-01-14", "2030-01-16"]


def test_treatment_plan_round_trip(client, auth_headers, sample_plan):
    headers = auth_headers("user-a")
    assert client.get("/treatment-plans", headers=headers).status_code == 404
    client.post("/treatment-plans", headers=headers, json=sample_plan)
    plan = client.get("/treatment-plans", headers=headers).json()["plan"]
    assert plan["user_id"] == "user-a"
    assert plan["goals"] == sample_plan["goals"]


def test_request_body_validation_maps_to_400(client, auth_headers):
    response = client.post("/daily-schedule", headers=auth_headers("user-a"), json={"activity": {}})
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_schedule_locks_are_released_after_writes(backend_module, client, auth_headers, seeded_schedule):
    schedule = seeded_schedule("user-a")
    headers = auth_headers("user-a")
    for activity in schedule["activities"][:3]:
        response = client.patch(
            "/daily-schedule",
            headers=headers,
            json={"scheduleId": schedule["id"], "activityId": activity["id"], "updates": {"title": "Renamed"}},
        )
        assert response.status_code == 200
    client.request("DELETE", "/daily-schedule", headers=headers, json={"scheduleId": schedule["id"], "activityId": 1})
    assert backend_module.container.store._locks == {}
