"""Pytest configuration and shared fixtures."""

import os

# Settings are read at import time
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret-key-with-at-least-32-bytes!"
os.environ.pop("QUIZ_SERVICE_URL", None)
os.environ.pop("COMPLETION_WEBHOOK_URL", None)

from collections.abc import Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from attempt_engine import models  # noqa: E402,F401
from attempt_engine.core import clock  # noqa: E402
from attempt_engine.db.base import Base  # noqa: E402
from attempt_engine.db.engine import engine  # noqa: E402
from attempt_engine.db.session import SessionLocal, get_db  # noqa: E402
from attempt_engine.main import app  # noqa: E402
from attempt_engine.services.completion import get_completion_notifier  # noqa: E402
from attempt_engine.services.quiz_definitions import (  # noqa: E402
    InMemoryQuizDefinitionProvider,
    get_quiz_provider,
)
from attempt_engine.services.state_machine import create_attempt  # noqa: E402
from tests.helpers.seed import FrozenClock, RecordingNotifier, auth_headers, make_quiz_definition  # noqa: E402

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def frozen_clock(monkeypatch) -> FrozenClock:
    """Pin the server clock; tests move it with ``advance`` / ``set_elapsed``."""
    fake = FrozenClock()
    monkeypatch.setattr(clock, "utcnow", fake)
    return fake


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier(certificate={"certificate_id": "cert-1"})


@pytest.fixture
def quiz_definition():
    return make_quiz_definition()


@pytest.fixture
def provider(quiz_definition) -> InMemoryQuizDefinitionProvider:
    return InMemoryQuizDefinitionProvider({quiz_definition.quiz_id: quiz_definition})


@pytest.fixture
def attempt(db, frozen_clock, quiz_definition):
    """Open attempt for student-1 on quiz-1, started at T0 with 600s."""
    attempt = create_attempt(db, quiz_definition, "student-1")
    db.commit()
    return attempt


@pytest.fixture
def client(db, provider, notifier) -> Generator[TestClient, None, None]:
    """Create a FastAPI test client with dependency overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass  # Don't close the session, it's managed by the db fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_quiz_provider] = lambda: provider
    app.dependency_overrides[get_completion_notifier] = lambda: notifier
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_headers_student() -> dict[str, str]:
    return auth_headers("student-1", "STUDENT")


@pytest.fixture
def auth_headers_other_student() -> dict[str, str]:
    return auth_headers("student-2", "STUDENT")


@pytest.fixture
def auth_headers_instructor() -> dict[str, str]:
    return auth_headers("instructor-1", "INSTRUCTOR")
