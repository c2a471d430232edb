from patrolhub.auth.security import get_password_hash
from patrolhub.models.models import User, ROLE_GUARD


def test_login_refresh_and_me(client, guard):
    r = client.post("/auth/login", json={"identifier": "guard", "password": "password123"})
    assert r.status_code == 200, r.text
    tokens = r.json()

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}).json()
    assert me["username"] == "guard"
    assert me["role"] == "guard"

    refreshed = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["access_token"]


def test_login_by_badge_number(client, guard):
    r = client.post("/auth/login", json={"identifier": "B-001", "password": "password123"})
    assert r.status_code == 200


def test_bad_credentials(client, guard):
    r = client.post("/auth/login", json={"identifier": "guard", "password": "wrong"})
    assert r.status_code == 401


def test_refresh_token_cannot_call_api(client, guard):
    tokens = client.post("/auth/login", json={"identifier": "guard", "password": "password123"}).json()
    r = client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"})
    assert r.status_code == 401


def test_admin_creates_and_lists_users(client, admin_headers, guard_headers):
    r = client.post(
        "/users",
        json={"username": "newguard", "email": "new@patrolhub.io", "password": "longpassword", "badge_number": "B-77"},
        headers=admin_headers,
    )
    assert r.status_code == 201, r.text
    assert r.json()["role"] == "guard"

    dup = client.post(
        "/users", json={"username": "newguard", "email": "x@patrolhub.io", "password": "longpassword"}, headers=admin_headers,
    )
    assert dup.status_code == 409

    listed = client.get("/users", params={"role": "guard"}, headers=admin_headers).json()
    assert "newguard" in [u["username"] for u in listed["items"]]

    assert client.get("/users", headers=guard_headers).status_code == 403


def test_create_user_racing_a_duplicate_is_conflict(client, db, admin_headers, commit_before_next_flush):
    commit_before_next_flush(lambda: User(
        username="racer", email="racer@patrolhub.io", name="Racer",
        password_hash=get_password_hash("longpassword"), role=ROLE_GUARD,
    ))
    r = client.post(
        "/users", json={"username": "racer", "email": "other@patrolhub.io", "password": "longpassword"}, headers=admin_headers,
    )
    assert r.status_code == 409
    assert r.json()["code"] == "DUPLICATE_USER"
    assert db.query(User).filter(User.username == "racer").count() == 1
