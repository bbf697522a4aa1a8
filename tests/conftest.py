import os
from contextlib import contextmanager

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE"] = ""
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_USERNAME", "harsh-admin")

import pytest
from fastapi.testclient import TestClient

import main
from broadcaster import RecordingBroadcaster
from create_admin import create_admin
from database import Base, SessionLocal, engine


@pytest.fixture(autouse=True)
def fresh_tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    main.app.dependency_overrides.clear()


@contextmanager
def session_scope():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def db():
    with session_scope() as session:
        yield session


@pytest.fixture
def broadcaster():
    recorder = RecordingBroadcaster()
    main.app.dependency_overrides[main.get_broadcaster] = lambda: recorder
    return recorder


@pytest.fixture
def client(broadcaster):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def admin():
    return create_admin()


def login(client, username, nickname):
    resp = client.post("/users/login", json={"username": username, "nickname": nickname})
    assert resp.status_code in (200, 201), resp.text
    return resp.json()["data"]


def create_post(client, message="hello", username="alice", nickname="Al"):
    resp = client.post("/posts", json={"message": message, "username": username, "nickname": nickname})
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]
