import os
import tempfile

# Settings are read once at import time, so the test environment has to be in
# place before anything from peer_tutoring is imported.
TEST_DIR = tempfile.mkdtemp(prefix="peer_tutoring_tests_")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["DB_URL"] = f"sqlite:///{os.path.join(TEST_DIR, 'test.db')}"
os.environ["LOGS_DIR"] = os.path.join(TEST_DIR, "logs")
os.environ["USE_REDIS"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PREVENT_DUPLICATE_SESSIONS"] = "false"
os.environ["GOOGLE_CLIENT_ID"] = ""
os.environ["GOOGLE_CLIENT_SECRET"] = ""
os.environ["GOOGLE_REFRESH_TOKEN"] = ""

import threading
from datetime import timedelta
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from peer_tutoring.auth_tools import create_access_token
from peer_tutoring.database.database import Base, SessionLocal, User, UserRole, engine
from peer_tutoring.schemas.authentication_schema import DecodedAccessToken
from peer_tutoring.services.calendar_sync import CalendarAdapter, CalendarSync, get_calendar_sync
from peer_tutoring.utilities import generate_uuid, utcnow


class FakeCalendarAdapter(CalendarAdapter):
    """Records every call; `fail` makes every call raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []
        self._lock = threading.Lock()
        self._counter = 0

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)
        if self.fail:
            raise RuntimeError("calendar unavailable")

    def create(self, event: dict) -> Optional[str]:
        self._record("create", event)
        with self._lock:
            self._counter += 1
            return f"evt-{self._counter}"

    def update(self, external_ref: str, event: dict) -> None:
        self._record("update", external_ref, event)

    def delete(self, external_ref: str) -> None:
        self._record("delete", external_ref)

    def names(self):
        return [call[0] for call in self.calls]


def make_actor(user: User) -> DecodedAccessToken:
    return DecodedAccessToken(
        sub=user.id,
        name=user.name,
        email=user.email,
        role=user.role.value,
        exp=int((utcnow() + timedelta(hours=1)).timestamp()),
    )


def auth_headers(user: User) -> dict:
    token = create_access_token(user.id, user.name, user.email, user.role.value)
    return {"Authorization": f"Bearer {token}"}


def session_payload(**overrides) -> dict:
    """A valid creation payload one week ahead."""
    payload = {
        "subject": "Mathematics",
        "description": "Working through quadratic equations together",
        "topic": "Quadratics",
        "schedule": {
            "date": utcnow() + timedelta(days=7),
            "start_time": "10:00",
            "end_time": "11:30",
        },
        "location": {"type": "online", "meeting_link": "https://meet.example.com/abc"},
        "capacity": {"max_participants": 3},
        "level": "beginner",
        "tags": ["Algebra", "exam prep"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def users(db):
    def add(name: str, role: UserRole) -> User:
        user = User(id=generate_uuid(), name=name, email=f"{name.lower()}@example.com", role=role)
        db.add(user)
        return user

    people = {
        "tutor": add("Tina", UserRole.TUTOR),
        "other_tutor": add("Oscar", UserRole.TUTOR),
        "admin": add("Ada", UserRole.ADMIN),
    }
    for i in range(1, 9):
        people[f"student{i}"] = add(f"Student{i}", UserRole.STUDENT)
    db.commit()
    return people


@pytest.fixture()
def calendar_adapter():
    return FakeCalendarAdapter()


@pytest.fixture()
def calendar_sync(calendar_adapter):
    return CalendarSync(calendar_adapter, session_factory=SessionLocal, timeout=2, time_zone="UTC")


@pytest.fixture()
def client(db, calendar_sync):
    from peer_tutoring.main import app

    app.dependency_overrides[get_calendar_sync] = lambda: calendar_sync
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
