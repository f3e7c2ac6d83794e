from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from auth import AccountService, LocalAccounts
from config import Settings
from db import make_engine, make_session_factory
from main import app
from remote import RemoteBackend
from repository import DataAccess
from schemas import Question, QuestionType, Survey
from services import get_accounts, get_data_access, get_settings
from storage import LocalBackend, MemoryStore

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'surveys.db'}")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def accounts(session_factory, clock):
    return AccountService(session_factory, secret_key="test-secret", clock=clock)


@pytest.fixture
def remote_data(session_factory, clock):
    return DataAccess(RemoteBackend(session_factory, clock=clock), clock=clock)


@pytest.fixture
def local_store():
    return MemoryStore()


@pytest.fixture
def local_data(local_store, clock):
    return DataAccess(LocalBackend(local_store, clock=clock), clock=clock)


@pytest.fixture
def alice(accounts):
    return accounts.sign_up("alice@example.com", "alice-pass").user


@pytest.fixture
def bob(accounts):
    return accounts.sign_up("bob@example.com", "bob-pass").user


@pytest.fixture
def make_survey():
    """Builds the three-question "Feedback" survey; keyword args override fields."""
    def _make(**fields):
        fields.setdefault("title", "Feedback")
        fields.setdefault("questions", [
            Question(id="q1", type=QuestionType.RATING, title="How satisfied are you?", required=True),
            Question(id="q2", type=QuestionType.MULTIPLE_SELECT, title="Which features do you use?",
                     options=["Export", "Analytics", "Sharing"]),
            Question(id="q3", type=QuestionType.TEXTAREA, title="Anything else?"),
        ])
        return Survey(**fields)
    return _make


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", public_base_url="http://surveys.test")


def _client(data, accounts, settings):
    app.dependency_overrides[get_data_access] = lambda: data
    app.dependency_overrides[get_accounts] = lambda: accounts
    app.dependency_overrides[get_settings] = lambda: settings
    return TestClient(app)


@pytest.fixture
def client(remote_data, accounts, settings):
    yield _client(remote_data, accounts, settings)
    app.dependency_overrides.clear()


@pytest.fixture
def local_client(local_data, settings):
    yield _client(local_data, LocalAccounts(), settings)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header(accounts):
    def _header(email="owner@example.com", password="owner-pass"):
        token = accounts.sign_up(email, password).access_token
        return {"Authorization": f"Bearer {token}"}
    return _header
