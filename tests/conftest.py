import os

# Settings are read at import time
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from safetyhub.auth.security import create_access_token
from safetyhub.db import Base, get_db, make_engine
from safetyhub.models.models import Profile
from safetyhub.services.lifecycle import ActingUser


PROFILES = {
    "reporter": ("reporter@example.com", "Riley Reporter", "user"),
    "reviewer": ("reviewer@example.com", "Robin Reviewer", "reviewer"),
    "other_reviewer": ("reviewer2@example.com", "Sam Second", "reviewer"),
    "assignee": ("assignee@example.com", "Alex Assignee", "assignee"),
    "other_assignee": ("assignee2@example.com", None, "assignee"),
}


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'safetyhub.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def profiles(db):
    rows = {}
    for key, (email, full_name, role) in PROFILES.items():
        rows[key] = Profile(email=email, full_name=full_name, role=role)
        db.add(rows[key])
    db.commit()
    return rows


@pytest.fixture
def actors(profiles):
    return {key: ActingUser.from_profile(p) for key, p in profiles.items()}


@pytest.fixture
def client(session_factory):
    from safetyhub.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth(profiles):
    def _headers(key: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(str(profiles[key].id))}"}

    return _headers
