import pytest

from auth import LOCAL_USER, AuthSession, LocalAccounts, SessionState
from errors import AuthError, BackendError, InvalidCredentials
from repository import ScopedSurveyCache


class BrokenAccounts:
    remote_enabled = True
    synthetic_user = None

    def get_user(self, token):
        raise BackendError("connection refused")


def _recorder(session):
    seen = []
    unsubscribe = session.subscribe(lambda state, user: seen.append((state, getattr(user, "id", None))))
    return seen, unsubscribe


# ------------------------
# Account service
# ------------------------
def test_sign_up_then_sign_in(accounts):
    created = accounts.sign_up("Carol@Example.com ", "carol-pass")
    assert created.user.email == "carol@example.com"
    assert accounts.get_user(created.access_token).id == created.user.id

    result = accounts.sign_in("carol@example.com", "carol-pass")
    assert result.token_type == "bearer"
    assert result.user.id == created.user.id


def test_sign_up_rules(accounts, alice):
    with pytest.raises(AuthError, match="at least 6"):
        accounts.sign_up("dave@example.com", "short")
    with pytest.raises(AuthError, match="invalid format"):
        accounts.sign_up("not-an-email", "long-enough")
    with pytest.raises(AuthError, match="already registered"):
        accounts.sign_up("alice@example.com", "whatever")


def test_wrong_password(accounts, alice):
    with pytest.raises(InvalidCredentials):
        accounts.sign_in("alice@example.com", "wrong-pass")
    with pytest.raises(InvalidCredentials):
        accounts.sign_in("nobody@example.com", "wrong-pass")


def test_sign_out_revokes_token(accounts):
    token = accounts.sign_up("erin@example.com", "erin-pass").access_token
    accounts.sign_out(token)
    assert accounts.get_user(token) is None
    # signing out twice, or with garbage, is harmless
    accounts.sign_out(token)
    accounts.sign_out("garbage")
    assert accounts.get_user("garbage") is None
    assert accounts.get_user(None) is None


def test_password_reset(accounts):
    old_token = accounts.sign_up("frank@example.com", "frank-pass").access_token
    assert accounts.request_password_reset("nobody@example.com") is None

    reset = accounts.request_password_reset("frank@example.com")
    accounts.reset_password(reset, "frank-new-pass")

    assert accounts.get_user(old_token) is None
    with pytest.raises(InvalidCredentials):
        accounts.sign_in("frank@example.com", "frank-pass")
    assert accounts.sign_in("frank@example.com", "frank-new-pass").user.email == "frank@example.com"

    with pytest.raises(AuthError, match="invalid or has expired"):
        accounts.reset_password("tampered" + reset, "whatever-pass")


def test_local_accounts():
    accounts = LocalAccounts()
    assert accounts.get_user("anything") == LOCAL_USER
    assert LOCAL_USER.id == "dev-user-123"
    with pytest.raises(AuthError, match="remote backend configuration"):
        accounts.sign_in("a@example.com", "password")
    accounts.sign_out("anything")


# ------------------------
# Session state machine
# ------------------------
def test_session_starts_loading_and_resolves(accounts):
    session = AuthSession(accounts)
    assert session.state == SessionState.LOADING
    assert session.initialize() == SessionState.UNAUTHENTICATED
    assert session.user is None


def test_session_restores_valid_token(accounts, alice):
    token = accounts.sign_in("alice@example.com", "alice-pass").access_token
    session = AuthSession(accounts, token)
    assert session.initialize() == SessionState.AUTHENTICATED
    assert session.user.id == alice.id


def test_session_drops_revoked_token(accounts, alice):
    token = accounts.sign_in("alice@example.com", "alice-pass").access_token
    accounts.sign_out(token)
    session = AuthSession(accounts, token)
    assert session.initialize() == SessionState.UNAUTHENTICATED
    assert session.token is None


def test_session_lookup_failure_is_error_state():
    session = AuthSession(BrokenAccounts(), "token")
    assert session.initialize() == SessionState.ERROR
    assert "connection refused" in session.error


def test_local_mode_substitutes_synthetic_user():
    session = AuthSession(LocalAccounts())
    assert session.initialize() == SessionState.UNAUTHENTICATED
    assert session.user == LOCAL_USER


def test_sign_in_and_out_notify_listeners(accounts, alice):
    session = AuthSession(accounts)
    seen, unsubscribe = _recorder(session)
    session.initialize()

    session.sign_in("alice@example.com", "alice-pass")
    assert session.is_authenticated
    session.sign_out()
    assert session.state == SessionState.UNAUTHENTICATED

    assert seen == [
        (SessionState.UNAUTHENTICATED, None),
        (SessionState.AUTHENTICATED, alice.id),
        (SessionState.UNAUTHENTICATED, None),
    ]

    unsubscribe()
    session.sign_in("alice@example.com", "alice-pass")
    assert len(seen) == 3


def test_failed_sign_in_keeps_prior_state(accounts, alice):
    session = AuthSession(accounts)
    session.initialize()
    seen, _ = _recorder(session)

    with pytest.raises(InvalidCredentials):
        session.sign_in("alice@example.com", "nope-nope")
    assert session.state == SessionState.UNAUTHENTICATED
    assert session.error == "Invalid login credentials"
    assert seen == []


def test_sign_up_through_session(accounts):
    session = AuthSession(accounts)
    session.initialize()
    user = session.sign_up("gina@example.com", "gina-pass")
    assert session.is_authenticated and session.user.id == user.id


def test_failed_reset_records_error(accounts):
    session = AuthSession(accounts)
    session.initialize()
    with pytest.raises(AuthError):
        session.reset_password("bad address")
    assert session.error
    assert session.state == SessionState.UNAUTHENTICATED


def test_expiry_and_refresh(accounts, alice):
    session = AuthSession(accounts)
    session.initialize()
    session.sign_in("alice@example.com", "alice-pass")

    # revoked somewhere else
    accounts.sign_out(session.token)
    assert session.refresh() == SessionState.UNAUTHENTICATED
    assert session.user is None and session.token is None


# ------------------------
# Survey list scoped to the session
# ------------------------
def test_scoped_cache_follows_identity(accounts, remote_data, alice, bob, make_survey):
    remote_data.save_survey(make_survey(title="Alice open"), alice)
    remote_data.save_survey(make_survey(title="Alice draft", is_active=False), alice)
    remote_data.save_survey(make_survey(title="Bob's"), bob)

    session = AuthSession(accounts)
    session.initialize()
    cache = ScopedSurveyCache(remote_data, session)
    assert sorted(s.title for s in cache.surveys) == ["Alice open", "Bob's"]

    session.sign_in("alice@example.com", "alice-pass")
    assert sorted(s.title for s in cache.surveys) == ["Alice draft", "Alice open"]

    session.sign_out()
    session.sign_in("bob@example.com", "bob-pass")
    assert [s.title for s in cache.surveys] == ["Bob's"]

    cache.close()
    session.sign_out()
    assert [s.title for s in cache.surveys] == ["Bob's"]


def test_scoped_cache_local_mode(local_data, make_survey):
    local_data.save_survey(make_survey())
    session = AuthSession(LocalAccounts())
    session.initialize()
    cache = ScopedSurveyCache(local_data, session)
    assert [s.title for s in cache.surveys] == ["Feedback"]
    cache.close()
