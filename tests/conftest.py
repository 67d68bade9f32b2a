"""
Pytest configuration and fixtures for the tasting backend tests.
"""

import os

# The app module builds its own engine at import time; keep it off disk
os.environ.setdefault("DATABASE_URL", "sqlite://")

import itertools

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from database import Base, get_db
from models import User
from core.broadcaster import Broadcaster, get_broadcaster
from core.events import build_message
from core.security import create_user_token


_email_counter = itertools.count(1)


# SQLite in-memory database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class RecordingBroadcaster(Broadcaster):
    """Broadcaster that records published messages instead of sending them."""

    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, room, event, payload, exclude=None):
        message = build_message(event, payload)
        self.published.append((room, message))
        return True

    def events(self, room=None):
        """Event names in publish order, optionally for one room."""
        return [m["event"] for r, m in self.published if room is None or r == room]

    def messages(self, event):
        return [m["data"] for _, m in self.published if m["event"] == event]


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    Uses SQLite in-memory for isolation.
    """
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture(scope="function")
def client(db_session, recorder):
    """
    Create a test client with database and broadcaster overrides.
    """
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_broadcaster] = lambda: recorder

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(db_session, display_name="Taster"):
    user = User(email=f"user{next(_email_counter)}@example.com", display_name=display_name)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


def user_headers(user):
    return {"Authorization": f"Bearer {create_user_token(user.id)}"}


def participant_headers(token):
    return {"X-Participant-Token": token}


def whiskey_payload(count=3):
    return [
        {
            "name": f"Whiskey {i}",
            "distillery": f"Distillery {i}",
            "age": 8 + i,
            "proof": 90.0 + i,
            "price": 40.0 + i,
            "mashbill": "High rye",
            "region": "Kentucky",
        }
        for i in range(1, count + 1)
    ]


def session_payload(count=3, **overrides):
    payload = {
        "name": "Friday Flight",
        "hostName": "Host",
        "theme": "bourbon",
        "whiskeys": whiskey_payload(count),
    }
    payload.update(overrides)
    return payload


def create_session(client, headers, **overrides):
    """POST /api/sessions and return the JSON body."""
    response = client.post("/api/sessions", json=session_payload(**overrides), headers=headers)
    assert response.status_code == 201, response.json()
    # Tests pass tokens explicitly; the cookie would leak between callers
    client.cookies.clear()
    return response.json()


def join_session(client, invite_code, display_name, headers=None):
    """POST /api/sessions/join and return the response."""
    response = client.post(
        "/api/sessions/join",
        json={"inviteCode": invite_code, "displayName": display_name},
        headers=headers or {},
    )
    client.cookies.clear()
    return response


def score_payload(session_id, whiskey_id, nose=8, palate=6, finish=7, overall=9, **extra):
    payload = {
        "sessionId": session_id,
        "whiskeyId": whiskey_id,
        "nose": nose,
        "palate": palate,
        "finish": finish,
        "overall": overall,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def moderator(db_session):
    return make_user(db_session, "Moderator")


@pytest.fixture
def moderator_headers(moderator):
    return user_headers(moderator)


@pytest.fixture
def tasting(client, db_session, moderator_headers):
    """
    A waiting session with three whiskeys and one guest participant.

    Returns a dict with session id, invite code, whiskey ids (display
    order), moderator / guest participant tokens.
    """
    created = create_session(client, moderator_headers)
    session_id = created["id"]

    detail = client.get(f"/api/sessions/{session_id}", headers=moderator_headers).json()
    whiskey_ids = [w["id"] for w in detail["whiskeys"]]

    joined = join_session(client, created["inviteCode"], "Alice")
    assert joined.status_code == 201, joined.json()

    return {
        "session_id": session_id,
        "invite_code": created["inviteCode"],
        "whiskey_ids": whiskey_ids,
        "moderator_token": created["participantToken"],
        "moderator_participant_id": created["participantId"],
        "guest_token": joined.json()["participantToken"],
        "guest_participant_id": joined.json()["participantId"],
    }


@pytest.fixture
def active_tasting(client, tasting, moderator_headers):
    response = client.post(f"/api/sessions/{tasting['session_id']}/start", headers=moderator_headers)
    assert response.status_code == 200, response.json()
    return tasting
