from starlette.requests import Request

from patrolhub.auth.security import create_access_token
from patrolhub.logging import actor_from_request


def _request(headers: dict) -> Request:
    return Request({"type": "http", "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()]})


def test_actor_is_read_from_bearer_token():
    token = create_access_token("3f1c0b9e-0000-4000-8000-000000000001", roles=["guard"])
    actor = actor_from_request(_request({"Authorization": f"Bearer {token}"}))
    assert actor == {"actor_id": "3f1c0b9e-0000-4000-8000-000000000001", "actor_role": "guard"}


def test_missing_or_bad_token_binds_nothing():
    assert actor_from_request(_request({})) == {}
    assert actor_from_request(_request({"Authorization": "Bearer not-a-jwt"})) == {}
    assert actor_from_request(_request({"Authorization": "Basic abc"})) == {}


def test_request_id_is_echoed(client):
    r = client.get("/healthz", headers={"X-Request-ID": "req-42"})
    assert r.headers["X-Request-ID"] == "req-42"
