from datetime import date, datetime

from patrolhub.models.models import Attendance, AuditLog, PatrolLog, Checkpoint


def test_day_shift_end_to_end(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 15, 6, 20)
    r = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "Late"
    assert body["lateMinutes"] == 20
    assert body["isLate"] is True
    assert body["shift"]["name"] == "Day Shift"
    assert body["date"] == "2024-01-15"
    assert body["scheduledCheckIn"].startswith("2024-01-15T06:00:00")

    clock.set(2024, 1, 15, 6, 25)
    again = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert again.status_code == 409
    assert again.json()["code"] == "ALREADY_CHECKED_IN"

    clock.set(2024, 1, 15, 18, 10)
    r = client.post("/attendance/check-out", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert r.status_code == 200, r.text
    out = r.json()
    assert out["earlyCheckoutMinutes"] == 0
    assert out["totalMinutes"] == 710
    assert out["totalHours"] == 11.83
    assert out["overtimeMinutes"] == 230
    assert out["status"] == "Late"


def test_check_in_within_grace_is_late_by_minutes_but_not_flagged(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 15, 6, 10)
    body = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers).json()
    assert body["lateMinutes"] == 10
    assert body["status"] == "Late"
    assert body["isLate"] is False


def test_night_shift_check_in_after_midnight_uses_previous_day(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 16, 0, 30)
    body = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers).json()
    assert body["shift"]["name"] == "Night Shift"
    assert body["date"] == "2024-01-15"
    assert body["lateMinutes"] == 390


def test_on_time_check_in_at_18_00_goes_to_night_shift(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 15, 18, 0)
    body = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers).json()
    assert body["shift"]["name"] == "Night Shift"
    assert body["status"] == "Present"
    assert body["lateMinutes"] == 0
    assert body["date"] == "2024-01-15"


def test_on_time_check_in_at_06_00_goes_to_day_shift(client, clock, default_shifts, guard_headers):
    clock.set(2024, 1, 16, 6, 0)
    body = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers).json()
    assert body["shift"]["name"] == "Day Shift"
    assert body["status"] == "Present"
    assert body["date"] == "2024-01-16"


def test_check_in_at_checkpoint_writes_patrol_log(client, clock, db, default_shifts, guard_headers, make_checkpoint):
    cp = make_checkpoint(latitude=40.0, longitude=-74.0, geofence_radius=100)
    clock.set(2024, 1, 15, 6, 0)
    r = client.post(
        "/attendance/check-in",
        json={"latitude": 40.0005, "longitude": -74.0, "checkpoint_id": str(cp.id)},
        headers=guard_headers,
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "Present"
    assert r.json()["checkpoint"]["distance"] == 56

    log = db.query(PatrolLog).one()
    assert log.checkpoint_id == cp.id
    assert log.distance_from_checkpoint == 56
    db.expire_all()
    assert db.get(Checkpoint, cp.id).last_patrolled is not None


def test_check_in_auto_selects_nearest_checkpoint(client, clock, db, default_shifts, guard_headers, make_checkpoint):
    make_checkpoint(name="Far Gate", latitude=40.01, longitude=-74.0)
    near = make_checkpoint(name="Near Gate", latitude=40.0001, longitude=-74.0)
    clock.set(2024, 1, 15, 7, 0)
    r = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert r.status_code == 200, r.text
    assert r.json()["checkpoint"]["id"] == str(near.id)


def test_check_in_outside_geofence(client, clock, db, default_shifts, guard_headers, make_checkpoint):
    cp = make_checkpoint(latitude=40.0, longitude=-74.0, geofence_radius=50)
    clock.set(2024, 1, 15, 6, 0)
    r = client.post(
        "/attendance/check-in",
        json={"latitude": 40.001, "longitude": -74.0, "checkpoint_id": str(cp.id)},
        headers=guard_headers,
    )
    assert r.status_code == 409
    assert r.json()["code"] == "OUTSIDE_GEOFENCE"
    assert r.json()["details"]["required_radius"] == 50
    assert db.query(Attendance).count() == 0


def test_check_in_without_active_shift(client, clock, guard_headers):
    r = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert r.status_code == 404
    assert r.json()["code"] == "NO_ACTIVE_SHIFT"


def test_check_in_rejects_bad_coordinates(client, default_shifts, guard_headers):
    r = client.post("/attendance/check-in", json={"latitude": 120, "longitude": 0}, headers=guard_headers)
    assert r.status_code == 422


def test_check_out_without_check_in(client, default_shifts, guard_headers):
    r = client.post("/attendance/check-out", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert r.status_code == 409
    assert r.json()["code"] == "NOT_CHECKED_IN"


def test_admin_cannot_check_in(client, default_shifts, admin_headers):
    r = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=admin_headers)
    assert r.status_code == 403


def test_status_and_history(client, clock, default_shifts, guard_headers):
    r = client.get("/attendance/status", headers=guard_headers)
    assert r.json()["status"] == "Not Checked In"

    clock.set(2024, 1, 15, 6, 0)
    client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    clock.set(2024, 1, 15, 8, 0)
    status = client.get("/attendance/status", headers=guard_headers).json()
    assert status["status"] == "Present"
    assert status["attendance"]["minutesOnDuty"] == 120

    history = client.get("/attendance/history", headers=guard_headers).json()
    assert history["total"] == 1
    assert history["items"][0]["shift"] == "Day Shift"


def test_mark_absent_is_idempotent_over_api(client, clock, db, default_shifts, guard_headers, admin_headers):
    clock.set(2024, 1, 15, 6, 0)
    attendance_id = client.post(
        "/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers,
    ).json()["attendanceId"]

    first = client.post(f"/attendance/{attendance_id}/mark-absent", headers=admin_headers)
    second = client.post(f"/attendance/{attendance_id}/mark-absent", headers=admin_headers)
    assert first.status_code == 200
    assert first.json()["status"] == "Absent"
    assert first.json()["checkInTime"] is None
    assert second.json() == first.json()

    off = client.post(f"/attendance/{attendance_id}/mark-off", json={"reason": "Sick"}, headers=admin_headers)
    assert off.json()["status"] == "Off"
    assert off.json()["notes"] == "Sick"


def test_mark_guard_off_creates_record(client, clock, db, guard, default_shifts, admin_headers):
    clock.set(2024, 1, 15, 9, 0)
    r = client.post("/attendance/mark-off", json={"guard_id": str(guard.id), "reason": "Leave"}, headers=admin_headers)
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "Off"
    row = db.query(Attendance).one()
    assert row.status == "Off"
    assert row.notes == "Leave"
    assert row.date == date(2024, 1, 15)


def test_auto_mark_absent_skips_guards_with_records(client, clock, make_user, default_shifts, guard, guard_headers, admin_headers):
    other = make_user(username="late_guard")
    make_user(username="inactive_guard", is_active=False)
    clock.set(2024, 1, 15, 6, 5)
    client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)

    r = client.post("/attendance/auto-mark-absent", headers=admin_headers)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["absentCount"] == 1
    assert body["absentGuards"][0]["guard"]["id"] == str(other.id)

    again = client.post("/attendance/auto-mark-absent", headers=admin_headers).json()
    assert again["absentCount"] == 0


def test_active_guards_and_daily_report(client, clock, make_user, default_shifts, guard, guard_headers, admin_headers):
    make_user(username="no_show")
    clock.set(2024, 1, 15, 6, 30)
    client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    client.post("/attendance/auto-mark-absent", headers=admin_headers)

    clock.set(2024, 1, 15, 8, 30)
    active = client.get("/attendance/active-guards", headers=admin_headers).json()
    assert active["count"] == 1
    assert active["items"][0]["guard"]["id"] == str(guard.id)
    assert active["items"][0]["hoursOnDuty"] == 2.0

    report = client.get("/attendance/daily-report", params={"date": "2024-01-15"}, headers=admin_headers).json()
    assert report["totals"] == {"present": 0, "late": 1, "absent": 1, "off": 0, "total": 2}
    assert report["shifts"]["Day Shift"]["total"] == 2


def test_concurrent_check_in_for_same_shift_conflicts(client, clock, db, guard, default_shifts, guard_headers, commit_before_next_flush):
    day, _ = default_shifts
    guard_id, shift_id = guard.id, day.id
    commit_before_next_flush(lambda: Attendance(
        guard_id=guard_id,
        shift_id=shift_id,
        date=date(2024, 1, 15),
        status="Present",
        check_in_time=datetime(2024, 1, 15, 6, 0),
        check_in_lat=40.0,
        check_in_lng=-74.0,
    ))

    clock.set(2024, 1, 15, 6, 5)
    r = client.post("/attendance/check-in", json={"latitude": 40.0, "longitude": -74.0}, headers=guard_headers)
    assert r.status_code == 409
    assert r.json()["code"] == "ALREADY_CHECKED_IN"
    assert db.query(Attendance).count() == 1
    assert db.query(AuditLog).filter(AuditLog.action == "CHECK_IN").count() == 0


def test_auto_mark_absent_racing_a_check_in_conflicts(client, clock, db, guard, default_shifts, admin_headers, commit_before_next_flush):
    day, _ = default_shifts
    guard_id, shift_id = guard.id, day.id
    commit_before_next_flush(lambda: Attendance(
        guard_id=guard_id, shift_id=shift_id, date=date(2024, 1, 15), status="Absent",
    ))

    r = client.post("/attendance/auto-mark-absent", headers=admin_headers)
    assert r.status_code == 409
    assert r.json()["code"] == "DUPLICATE_ATTENDANCE"
    assert db.query(Attendance).count() == 1
