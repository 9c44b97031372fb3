"""Shared pytest fixtures for EventGate."""

from __future__ import annotations

import secrets
import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventgate import api, database, storage
from eventgate.checkin import CheckInService
from eventgate.mail import SendResult
from eventgate.models import Base, Event, User
from eventgate.notifications import NotificationDispatcher
from eventgate.policy import (
    ROLE_EVENT_PLANNER,
    ROLE_SUPER_ADMIN,
    ROLE_USER,
    Caller,
)
from eventgate.registration import DEFAULT_QUESTIONS, RegistrationService
from eventgate.repositories import Repositories
from eventgate.reviews import ReviewService
from eventgate.utils import utcnow


class RecordingTransport:
    """Mail transport double that records messages and can fail on demand."""

    def __init__(self) -> None:
        self.sent = []
        self.fail_for: set[str] = set()
        self.raise_for: set[str] = set()

    def send(self, message):
        if message.to in self.raise_for:
            raise ConnectionError("SMTP connection dropped")
        if message.to in self.fail_for:
            return SendResult(success=False, error="Mailbox unavailable")
        self.sent.append(message)
        return SendResult(success=True, message_id=f"<{len(self.sent)}@test>")


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    storage.get_session = database.get_session
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    database.SessionLocal.remove()
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
        db.commit()
    finally:
        db.close()


@pytest.fixture()
def transport():
    return RecordingTransport()


@pytest.fixture()
def repos(session):
    return Repositories(session)


@pytest.fixture()
def dispatcher(repos, transport):
    return NotificationDispatcher(repos, transport)


@pytest.fixture()
def registration(repos, dispatcher):
    return RegistrationService(repos, dispatcher)


@pytest.fixture()
def check_in_service(repos, dispatcher):
    return CheckInService(repos, dispatcher)


@pytest.fixture()
def review_service(repos):
    return ReviewService(repos)


def make_user(session, *, role: str = ROLE_USER, email: str | None = None) -> User:
    token = secrets.token_urlsafe(16)
    user = User(
        email=email or f"{token[:8].lower()}@example.com",
        first_name="Test",
        last_name=role.title(),
        role=role,
        api_token=token,
    )
    session.add(user)
    session.flush()
    return user


def caller_for(user: User) -> Caller:
    return Caller(
        user_id=user.id, role=user.role, email=user.email, name=user.full_name
    )


def make_event(
    session,
    organizer: User,
    *,
    title: str = "PyCon Meetup",
    starts_in: timedelta = timedelta(days=7),
    published: tuple[str, ...] = ("attendee",),
    questions: dict | None = None,
) -> Event:
    repos = Repositories(session)
    event = repos.events.add(
        Event(
            slug=repos.events.unique_slug(title),
            organizer_id=organizer.id,
            title=title,
            location="Main Hall",
            start_time=utcnow() + starts_in,
        )
    )
    for form_type, default_questions in DEFAULT_QUESTIONS.items():
        form = repos.forms.ensure(event.id, form_type)
        form.questions = list((questions or {}).get(form_type, default_questions))
        form.status = "published" if form_type in published else "draft"
    session.flush()
    return event


@pytest.fixture()
def organizer(session):
    return make_user(session, role=ROLE_EVENT_PLANNER, email="planner@example.com")


@pytest.fixture()
def admin(session):
    return make_user(session, role=ROLE_SUPER_ADMIN, email="root@example.com")


@pytest.fixture()
def attendee(session):
    return make_user(session, email="jane@example.com")


@pytest.fixture()
def event(session, organizer):
    return make_event(session, organizer)
