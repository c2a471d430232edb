import uuid

from patrolhub.models.models import User


def _assign(client, headers, *pairs):
    return client.post(
        "/checkpoints/bulk-assign",
        json={"assignments": [{"checkpointId": str(cp.id), "guardId": str(g.id)} for cp, g in pairs]},
        headers=headers,
    )


def test_bulk_assign_partial_failure_keeps_successes(client, db, admin_headers, make_user, make_checkpoint):
    cp1 = make_checkpoint(max_assigned_guards=2)
    cp2 = make_checkpoint(max_assigned_guards=1)
    g1, g2 = make_user(), make_user()
    missing = uuid.uuid4()

    r = client.post(
        "/checkpoints/bulk-assign",
        json={"assignments": [
            {"checkpointId": str(cp1.id), "guardId": str(g1.id)},
            {"checkpointId": str(cp1.id), "guardId": str(missing)},
            {"checkpointId": str(cp2.id), "guardId": str(g2.id)},
        ]},
        headers=admin_headers,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["summary"] == {"total": 3, "successful": 2, "failed": 1}
    assert body["failed"][0]["guardId"] == str(missing)
    assert body["failed"][0]["code"] == "GUARD_NOT_FOUND"
    assert body["failed"][0]["reason"]

    db.expire_all()
    assert db.get(User, g1.id).assigned_checkpoint_id == cp1.id
    assert db.get(User, g2.id).assigned_checkpoint_id == cp2.id


def test_bulk_assign_capacity_within_batch(client, admin_headers, make_user, make_checkpoint):
    cp = make_checkpoint(max_assigned_guards=1)
    g1, g2 = make_user(), make_user()
    body = _assign(client, admin_headers, (cp, g1), (cp, g2)).json()
    assert [s["guardId"] for s in body["successful"]] == [str(g1.id)]
    assert body["failed"][0]["code"] == "CHECKPOINT_AT_CAPACITY"


def test_bulk_assign_limits_batch_size(client, admin_headers):
    assert client.post("/checkpoints/bulk-assign", json={"assignments": []}, headers=admin_headers).status_code == 422
    too_many = [{"checkpointId": str(uuid.uuid4()), "guardId": str(uuid.uuid4())} for _ in range(51)]
    r = client.post("/checkpoints/bulk-assign", json={"assignments": too_many}, headers=admin_headers)
    assert r.status_code == 422


def test_bulk_assign_requires_admin(client, guard_headers):
    r = client.post("/checkpoints/bulk-assign", json={"assignments": []}, headers=guard_headers)
    assert r.status_code == 403


def test_list_is_cached_and_invalidated_by_assignment(client, admin_headers, make_user, make_checkpoint):
    cp = make_checkpoint(max_assigned_guards=2)
    g1 = make_user()

    listed = client.get("/checkpoints", headers=admin_headers).json()
    assert listed[0]["assigned_guards"] == 0

    _assign(client, admin_headers, (cp, g1))
    listed = client.get("/checkpoints", headers=admin_headers).json()
    assert listed[0]["assigned_guards"] == 1
    assert listed[0]["can_assign_more"] is True


def test_bulk_unassign(client, admin_headers, make_user, make_checkpoint):
    cp = make_checkpoint()
    g1, g2 = make_user(assigned_checkpoint_id=cp.id), make_user()
    r = client.post(
        "/checkpoints/bulk-unassign", json={"guardIds": [str(g1.id), str(g2.id)]}, headers=admin_headers,
    )
    body = r.json()
    assert body["summary"] == {"total": 2, "successful": 1, "failed": 1}
    assert body["failed"][0]["code"] == "GUARD_NOT_ASSIGNED"


def test_create_update_toggle_checkpoint(client, admin_headers):
    r = client.post(
        "/checkpoints",
        json={"name": "North Gate", "location": "North", "latitude": 40.0, "longitude": -74.0},
        headers=admin_headers,
    )
    assert r.status_code == 201, r.text
    cp = r.json()
    assert cp["geofence_radius"] == 100
    assert cp["is_geofence_enabled"] is True

    dup = client.post("/checkpoints", json={"name": "North Gate", "location": "X"}, headers=admin_headers)
    assert dup.status_code == 409

    half = client.post("/checkpoints", json={"name": "Half", "location": "X", "latitude": 1.0}, headers=admin_headers)
    assert half.status_code == 422

    r = client.patch(f"/checkpoints/{cp['id']}", json={"geofence_radius": 250, "priority": "high"}, headers=admin_headers)
    assert r.json()["geofence_radius"] == 250
    assert r.json()["priority"] == "high"

    r = client.post(f"/checkpoints/{cp['id']}/toggle", headers=admin_headers)
    assert r.json()["is_active"] is False
    assert client.get("/checkpoints", headers=admin_headers).json() == []


def test_nearby_and_assigned(client, guard, guard_headers, make_checkpoint, db):
    near = make_checkpoint(name="Near", latitude=40.0, longitude=-74.0)
    make_checkpoint(name="Far", latitude=41.0, longitude=-74.0)
    r = client.get("/checkpoints/nearby", params={"latitude": 40.001, "longitude": -74.0, "radius": 500}, headers=guard_headers)
    assert [c["name"] for c in r.json()] == ["Near"]
    assert r.json()[0]["distance"] == 111
    assert r.json()[0]["within_geofence"] is False

    assert client.get("/checkpoints/assigned", headers=guard_headers).json() == {"checkpoint": None}
    guard.assigned_checkpoint_id = near.id
    db.commit()
    assert client.get("/checkpoints/assigned", headers=guard_headers).json()["checkpoint"]["name"] == "Near"


def test_unknown_checkpoint(client, admin_headers):
    assert client.get(f"/checkpoints/{uuid.uuid4()}", headers=admin_headers).status_code == 404
    assert client.get("/checkpoints/not-a-uuid", headers=admin_headers).status_code == 400
