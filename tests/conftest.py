import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"
os.environ["TZ_DEFAULT"] = "UTC"
os.environ["JWT_SECRET"] = "test-secret"

from datetime import datetime, time, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from patrolhub.main import app
from patrolhub.db import Base, get_db
from patrolhub.auth.security import create_access_token, get_password_hash
from patrolhub.models.models import Checkpoint, Shift, User, ROLE_ADMIN, ROLE_GUARD
from patrolhub.services.time_rules import utc_now


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def set(self, *args):
        self.now = datetime(*args, tzinfo=timezone.utc)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def client(session_factory, clock):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[utc_now] = lambda: clock.now
    app.state.checkpoint_cache.invalidate()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(role=ROLE_GUARD, **kw):
        counter["n"] += 1
        n = counter["n"]
        u = User(
            username=kw.pop("username", f"{role}{n}"),
            email=kw.pop("email", f"{role}{n}@patrolhub.io"),
            name=kw.pop("name", f"{role.title()} {n}"),
            password_hash=get_password_hash(kw.pop("password", "password123")),
            role=role,
            **kw,
        )
        db.add(u)
        db.commit()
        db.refresh(u)
        return u

    return _make


@pytest.fixture()
def admin(make_user):
    return make_user(ROLE_ADMIN, username="admin")


@pytest.fixture()
def guard(make_user):
    return make_user(ROLE_GUARD, username="guard", badge_number="B-001")


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), roles=[user.role])}"}


@pytest.fixture()
def headers_for():
    return _auth


@pytest.fixture()
def admin_headers(admin):
    return _auth(admin)


@pytest.fixture()
def guard_headers(guard):
    return _auth(guard)


@pytest.fixture()
def default_shifts(db):
    day = Shift(name="Day Shift", start_time=time(6, 0), end_time=time(18, 0), is_active=True)
    night = Shift(name="Night Shift", start_time=time(18, 0), end_time=time(6, 0), is_active=True)
    db.add_all([day, night])
    db.commit()
    db.refresh(day)
    db.refresh(night)
    return day, night


@pytest.fixture()
def make_checkpoint(db):
    counter = {"n": 0}

    def _make(**kw):
        counter["n"] += 1
        cp = Checkpoint(
            name=kw.pop("name", f"Checkpoint {counter['n']}"),
            location=kw.pop("location", "Main site"),
            **kw,
        )
        db.add(cp)
        db.commit()
        db.refresh(cp)
        return cp

    return _make


@pytest.fixture()
def commit_before_next_flush(session_factory):
    """
    Arrange for another writer to commit a row just before the next flush
    of any session, i.e. between a request's lookup and its insert.
    """
    armed = []

    def _arm(make_row):
        fired = []

        def _before_flush(session, flush_context, instances):
            if fired:
                return
            fired.append(True)
            other = session_factory()
            try:
                other.add(make_row())
                other.commit()
            finally:
                other.close()

        event.listen(Session, "before_flush", _before_flush)
        armed.append(_before_flush)

    yield _arm
    for fn in armed:
        event.remove(Session, "before_flush", fn)
