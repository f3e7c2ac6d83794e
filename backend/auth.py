import logging
import re
from enum import Enum
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import select
from werkzeug.security import check_password_hash, generate_password_hash

from backends import new_id, utcnow
from errors import AuthError, InvalidCredentials, SurveyError
from models import AuthSessionRow, UserRow
from remote import backend_errors
from schemas import AuthResult, User

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6

LOCAL_USER = User(id="dev-user-123", email="developer@example.com", created_at=utcnow())


def _normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise AuthError("Unable to validate email address: invalid format")
    return email


def _check_password(password: str) -> None:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise AuthError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")


class AccountService:
    """Accounts and sessions stored next to the surveys in the relational backend.

    Access tokens are signed, timestamped references to an ``auth_sessions``
    row, so signing out (revoking the row) invalidates them before they expire.
    """

    remote_enabled = True
    synthetic_user = None

    def __init__(self, session_factory, secret_key: str, session_max_age: int = 7 * 24 * 3600,
                 reset_token_max_age: int = 3600, clock=utcnow):
        self.session_factory = session_factory
        self.session_max_age = session_max_age
        self.reset_token_max_age = reset_token_max_age
        self.clock = clock
        self._tokens = URLSafeTimedSerializer(secret_key, salt="access-token")
        self._resets = URLSafeTimedSerializer(secret_key, salt="password-reset-salt")

    def _open_session(self, db, user_row) -> AuthResult:
        session_row = AuthSessionRow(id=new_id(), user_id=user_row.id, created_at=self.clock())
        db.add(session_row)
        db.flush()
        token = self._tokens.dumps({"sid": session_row.id, "uid": user_row.id})
        return AuthResult(access_token=token, user=User.model_validate(user_row))

    def sign_up(self, email: str, password: str) -> AuthResult:
        email = _normalize_email(email)
        _check_password(password)
        with backend_errors("signing up"), self.session_factory.begin() as db:
            if db.execute(select(UserRow).where(UserRow.email == email)).scalar_one_or_none():
                raise AuthError("User already registered")
            row = UserRow(id=new_id(), email=email, password_hash=generate_password_hash(password),
                          created_at=self.clock())
            db.add(row)
            db.flush()
            logger.info("Registered user %s", row.id)
            return self._open_session(db, row)

    def sign_in(self, email: str, password: str) -> AuthResult:
        email = (email or "").strip().lower()
        with backend_errors("signing in"), self.session_factory.begin() as db:
            row = db.execute(select(UserRow).where(UserRow.email == email)).scalar_one_or_none()
            if row is None or not check_password_hash(row.password_hash, password or ""):
                raise InvalidCredentials("Invalid login credentials")
            return self._open_session(db, row)

    def _session_id(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            data = self._tokens.loads(token, max_age=self.session_max_age)
        except BadSignature:
            return None
        return data.get("sid")

    def get_user(self, token: Optional[str]) -> Optional[User]:
        sid = self._session_id(token)
        if sid is None:
            return None
        with backend_errors("loading session"), self.session_factory() as db:
            session_row = db.get(AuthSessionRow, sid)
            if session_row is None or session_row.revoked_at is not None:
                return None
            return User.model_validate(session_row.user)

    def sign_out(self, token: Optional[str]) -> None:
        sid = self._session_id(token)
        if sid is None:
            return
        with backend_errors("signing out"), self.session_factory.begin() as db:
            session_row = db.get(AuthSessionRow, sid)
            if session_row is not None and session_row.revoked_at is None:
                session_row.revoked_at = self.clock()

    def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a password reset token for ``email``.

        Returns None for unknown addresses; callers should answer the same
        way in both cases.
        """
        email = _normalize_email(email)
        with backend_errors("requesting password reset"), self.session_factory() as db:
            row = db.execute(select(UserRow).where(UserRow.email == email)).scalar_one_or_none()
        if row is None:
            logger.info("Password reset requested for unknown address")
            return None
        logger.info("Password reset requested for user %s", row.id)
        return self._resets.dumps(email)

    def reset_password(self, token: str, new_password: str) -> User:
        try:
            email = self._resets.loads(token, max_age=self.reset_token_max_age)
        except BadSignature:
            raise AuthError("Reset link is invalid or has expired")
        _check_password(new_password)
        with backend_errors("resetting password"), self.session_factory.begin() as db:
            row = db.execute(select(UserRow).where(UserRow.email == email)).scalar_one_or_none()
            if row is None:
                raise AuthError("Reset link is invalid or has expired")
            row.password_hash = generate_password_hash(new_password)
            now = self.clock()
            for session_row in row.sessions:
                if session_row.revoked_at is None:
                    session_row.revoked_at = now
            db.flush()
            return User.model_validate(row)


class LocalAccounts:
    """No remote auth: everyone is the one local profile."""

    remote_enabled = False
    synthetic_user = LOCAL_USER

    def get_user(self, token=None) -> User:
        return LOCAL_USER

    def _unavailable(self, *args, **kwargs):
        raise AuthError("Authentication requires remote backend configuration")

    sign_in = sign_up = request_password_reset = reset_password = _unavailable

    def sign_out(self, token=None) -> None:
        return None


class SessionState(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    ERROR = "error"


class AuthSession:
    """Client-side view of the current session.

    Starts in LOADING until :meth:`initialize` has asked the account service
    about the stored token. Listeners registered with :meth:`subscribe` are
    called as ``listener(state, user)`` whenever the identity changes, so
    anything holding user-scoped query results can re-query.
    """

    def __init__(self, accounts, token: Optional[str] = None):
        self.accounts = accounts
        self.token = token
        self.state = SessionState.LOADING
        self.user: Optional[User] = None
        self.error: Optional[str] = None
        self._listeners = []

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def subscribe(self, listener):
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _transition(self, state: SessionState, user: Optional[User]) -> None:
        before = (self.state, getattr(self.user, "id", None))
        self.state, self.user = state, user
        if before != (state, getattr(user, "id", None)):
            for listener in list(self._listeners):
                listener(state, user)

    def _signed_out_user(self) -> Optional[User]:
        return self.accounts.synthetic_user

    def initialize(self) -> SessionState:
        if not self.accounts.remote_enabled:
            self._transition(SessionState.UNAUTHENTICATED, self._signed_out_user())
            return self.state
        try:
            user = self.accounts.get_user(self.token)
        except SurveyError as exc:
            self.error = exc.message
            self._transition(SessionState.ERROR, None)
            return self.state
        if user is None:
            self.token = None
            self._transition(SessionState.UNAUTHENTICATED, None)
        else:
            self._transition(SessionState.AUTHENTICATED, user)
        return self.state

    def _authenticate(self, action, email: str, password: str) -> User:
        prior = self.state
        self.state = SessionState.LOADING
        self.error = None
        try:
            result = action(email, password)
        except SurveyError as exc:
            self.state = prior
            self.error = exc.message
            logger.warning("Authentication failed: %s", exc.message)
            raise
        self.token = result.access_token
        self._transition(SessionState.AUTHENTICATED, result.user)
        return result.user

    def sign_in(self, email: str, password: str) -> User:
        return self._authenticate(self.accounts.sign_in, email, password)

    def sign_up(self, email: str, password: str) -> User:
        return self._authenticate(self.accounts.sign_up, email, password)

    def sign_out(self) -> None:
        try:
            self.accounts.sign_out(self.token)
        except SurveyError as exc:
            self.error = exc.message
            raise
        self.token = None
        self._transition(SessionState.UNAUTHENTICATED, self._signed_out_user())

    def expire(self) -> None:
        """The session ended outside our control (timeout, revoked elsewhere)."""
        self.token = None
        self._transition(SessionState.UNAUTHENTICATED, self._signed_out_user())

    def refresh(self) -> SessionState:
        if self.is_authenticated and self.accounts.get_user(self.token) is None:
            self.expire()
        return self.state

    def reset_password(self, email: str) -> None:
        self.error = None
        try:
            self.accounts.request_password_reset(email)
        except SurveyError as exc:
            self.error = exc.message
            raise
