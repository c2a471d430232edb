from patrolhub.models.models import Attendance


def test_setup_defaults_is_idempotent(client, admin_headers):
    first = client.post("/shifts/setup-defaults", headers=admin_headers).json()
    assert sorted(s["name"] for s in first["created"]) == ["Day Shift", "Night Shift"]
    night = next(s for s in first["created"] if s["name"] == "Night Shift")
    assert night["crossesMidnight"] is True
    assert night["durationMinutes"] == 720
    assert night["color_code"] == "#191970"

    second = client.post("/shifts/setup-defaults", headers=admin_headers).json()
    assert second["created"] == []
    assert len(second["existing"]) == 2


def test_create_shift_validation(client, admin_headers):
    ok = client.post(
        "/shifts",
        json={"name": "Swing", "start_time": "14:00:00", "end_time": "22:00:00", "grace_period": 5},
        headers=admin_headers,
    )
    assert ok.status_code == 201, ok.text
    assert ok.json()["grace_period"] == 5
    assert ok.json()["break_duration"] == 30

    dup = client.post("/shifts", json={"name": "Swing", "start_time": "01:00:00", "end_time": "02:00:00"}, headers=admin_headers)
    assert dup.status_code == 409
    assert dup.json()["code"] == "DUPLICATE_SHIFT_NAME"

    zero = client.post("/shifts", json={"name": "Zero", "start_time": "08:00:00", "end_time": "08:00:00"}, headers=admin_headers)
    assert zero.status_code == 400
    assert zero.json()["code"] == "ZERO_LENGTH_SHIFT"

    bad = client.post("/shifts", json={"name": "Bad", "start_time": "8am", "end_time": "17:00:00"}, headers=admin_headers)
    assert bad.status_code == 422


def test_update_shift(client, admin_headers, default_shifts):
    day, _ = default_shifts
    r = client.patch(f"/shifts/{day.id}", json={"end_time": "17:00:00"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["durationMinutes"] == 660

    r = client.patch(f"/shifts/{day.id}", json={"end_time": "06:00:00"}, headers=admin_headers)
    assert r.status_code == 400


def test_current_shift(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 16, 2, 0)
    r = client.get("/shifts/current", headers=guard_headers)
    assert r.json()["name"] == "Night Shift"
    assert r.json()["shiftDate"] == "2024-01-15"


def test_current_shift_at_handover(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 15, 18, 0)
    r = client.get("/shifts/current", headers=guard_headers)
    assert r.json()["name"] == "Night Shift"
    assert r.json()["shiftDate"] == "2024-01-15"

    clock.set(2024, 1, 16, 6, 0)
    r = client.get("/shifts/current", headers=guard_headers)
    assert r.json()["name"] == "Day Shift"
    assert r.json()["shiftDate"] == "2024-01-16"


def test_delete_shift_with_attendance_requires_force(client, clock, db, default_shifts, guard_headers, admin_headers):
    day, _ = default_shifts
    clock.set(2024, 1, 15, 7, 0)
    client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)

    r = client.delete(f"/shifts/{day.id}", headers=admin_headers)
    assert r.status_code == 409
    assert r.json()["details"]["attendance_count"] == 1

    r = client.delete(f"/shifts/{day.id}", params={"force": "true"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"deleted": True, "attendanceDeleted": 1}
    assert db.query(Attendance).count() == 0


def test_shift_stats(client, clock, default_shifts, guard_headers, admin_headers):
    day, _ = default_shifts
    clock.set(2024, 1, 15, 6, 20)
    client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    stats = client.get(f"/shifts/{day.id}/stats", headers=admin_headers).json()
    assert stats["totals"]["late"] == 1
    assert stats["attendanceRate"] == 100.0
    assert stats["averageLateMinutes"] == 20.0
