"""
Login, session checks and logout against a credentials table.

Every failed login looks the same to the client: one generic message and
a short delay, whether the IP was blocked, the username was blocked, the
form was incomplete, the user does not exist or the password was wrong.
The cause is only logged.

Password verification always runs exactly once per attempt that gets as
far as the lookup, against the stored hash or, for unknown usernames,
against DUMMY_PASSWORD_HASH, so response time does not reveal which
usernames exist.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from mvckit.auth import DUMMY_PASSWORD_HASH, expiration_from_now, generate_session_token, hash_password, utcnow, verify_password
from mvckit.errors import ConfigurationError
from mvckit.model import Model, ResultRow
from mvckit.query import LOGIC_AND, Filter, SQLField
from mvckit.ratelimit import RateLimiter
from mvckit.sessions import SessionStore

logger = logging.getLogger(__name__)

BLOCKED_DELAY = 2.0
MISSING_CREDENTIALS_DELAY = (0.2, 0.3)
FAILURE_DELAY = (0.05, 0.15)


class FailureReason(str, Enum):
    IP_BLOCKED = "ip_blocked"
    MISSING_CREDENTIALS = "missing_credentials"
    USERNAME_BLOCKED = "username_blocked"
    UNKNOWN_USER = "unknown_user"
    BAD_PASSWORD = "bad_password"


@dataclass
class AuthCondition:
    """Static condition ANDed onto every credentials lookup, e.g. active = 1."""
    field: str
    operator: str
    value: object


@dataclass
class AuthObject:
    model: Model
    username_field: str = "username"
    password_field: str = "password"
    hash_code_field: str = "hash_code"
    expire_field: str = "expires_at"
    session_key: str = "auth_token"
    expire_after_idle: timedelta = timedelta(minutes=30)
    extra_conditions: list[AuthCondition] = field(default_factory=list)
    logged_in_message: str = ""
    login_fail_message: str = "Invalid credentials"
    # scrubbed copy of the last authenticated row
    user_data: Optional[ResultRow] = None

    def expiration_from_now(self) -> datetime:
        return expiration_from_now(self.expire_after_idle)


@dataclass
class LoginResult:
    success: bool
    user: Optional[ResultRow] = None
    # for logs only, never shown to the client
    reason: Optional[FailureReason] = None


class AuthController:
    """
    Runs the login state machine for one AuthObject.

    ``ip_limiter`` and ``user_limiter`` are optional; pass None to disable
    that kind of limiting. ``sleep`` performs the deliberate delays and is
    only replaced in tests.
    """

    def __init__(
        self,
        auth: AuthObject,
        ip_limiter: Optional[RateLimiter] = None,
        user_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.auth = auth
        self.ip_limiter = ip_limiter
        self.user_limiter = user_limiter
        self._sleep = sleep
        self._rng = rng or random.SystemRandom()
        self._user_lock = threading.Lock()

    @property
    def current_user(self) -> Optional[ResultRow]:
        with self._user_lock:
            return None if self.auth.user_data is None else self.auth.user_data.copy()

    def hash_password(self, password: str) -> str:
        return hash_password(password)

    def _fail(self, session: SessionStore, reason: FailureReason, delay: float) -> LoginResult:
        if self.auth.login_fail_message:
            session.put("error", self.auth.login_fail_message)
        self._sleep(delay)
        return LoginResult(success=False, reason=reason)

    def _lookup_filters(self, field_name: str, value) -> list[Filter]:
        filters = [Filter(field=field_name, operator="=", value=value)]
        for c in self.auth.extra_conditions:
            filters.append(Filter(field=c.field, operator=c.operator, value=c.value, logic=LOGIC_AND))
        return filters

    def login(self, session: SessionStore, username: str, password: str, client_ip: str) -> LoginResult:
        """
        Authenticate ``username``/``password`` coming from ``client_ip``.

        On success the new token and expiry are written to the credentials
        row and the token is stored in the session under the session key.
        Database errors propagate; every other failure returns a LoginResult
        with ``success`` False.
        """
        auth = self.auth
        model = auth.model
        session.renew_token()

        if self.ip_limiter is not None and self.ip_limiter.is_blocked(client_ip):
            logger.info("Login attempt from blocked IP: %s", client_ip)
            return self._fail(session, FailureReason.IP_BLOCKED, BLOCKED_DELAY)

        if not username or not password:
            logger.info("Login failed: missing credentials")
            return self._fail(session, FailureReason.MISSING_CREDENTIALS, self._rng.uniform(*MISSING_CREDENTIALS_DELAY))

        if self.user_limiter is not None and self.user_limiter.is_blocked(username):
            logger.info("Login attempt for blocked username: %s", username)
            if self.ip_limiter is not None:
                self.ip_limiter.record_failed_attempt(client_ip)
            return self._fail(session, FailureReason.USERNAME_BLOCKED, BLOCKED_DELAY)

        rows = model.fetch(self._lookup_filters(f"{model.table_name}.{auth.username_field}", username), 1)

        user_exists = len(rows) > 0
        user_id = None
        if user_exists:
            row = rows[0]
            stored_hash = row.get(auth.password_field)
            if stored_hash is None:
                raise ConfigurationError("password field not found in user record")
            if row.index(model.pk_field) < 0:
                raise ConfigurationError("primary key field not found in user record")
            stored_hash = str(stored_hash)
            user_id = row.value(model.pk_field)
        else:
            stored_hash = DUMMY_PASSWORD_HASH

        password_valid = verify_password(password, stored_hash)

        if not (user_exists and password_valid):
            if self.ip_limiter is not None:
                self.ip_limiter.record_failed_attempt(client_ip)
            if self.user_limiter is not None:
                self.user_limiter.record_failed_attempt(username)
            logger.info("Auth failed for user: %s from IP: %s", username, client_ip)
            reason = FailureReason.BAD_PASSWORD if user_exists else FailureReason.UNKNOWN_USER
            return self._fail(session, reason, self._rng.uniform(*FAILURE_DELAY))

        if self.ip_limiter is not None:
            self.ip_limiter.reset_attempts(client_ip)
        if self.user_limiter is not None:
            self.user_limiter.reset_attempts(username)

        token = generate_session_token()
        expires = auth.expiration_from_now()
        model.update([SQLField(auth.hash_code_field, token), SQLField(auth.expire_field, expires)], user_id)
        logger.info("Auth successful for user: %s from IP: %s", username, client_ip)

        if auth.logged_in_message:
            session.put("flash", auth.logged_in_message)
        session.put(auth.session_key, token)

        snapshot = row.copy()
        if snapshot.index(auth.expire_field) >= 0:
            snapshot.set(auth.expire_field, expires)
        if snapshot.index(auth.hash_code_field) >= 0:
            snapshot.set(auth.hash_code_field, "")
        snapshot.set(auth.password_field, "")

        with self._user_lock:
            auth.user_data = snapshot
        return LoginResult(success=True, user=snapshot.copy())

    def _row_for_session(self, session: SessionStore, extra_conditions: bool = True) -> Optional[ResultRow]:
        token = session.get(self.auth.session_key)
        field_name = self.auth.hash_code_field
        if extra_conditions:
            filters = self._lookup_filters(field_name, token)
        else:
            filters = [Filter(field=field_name, operator="=", value=token)]
        rows = self.auth.model.fetch(filters, 1)
        return rows[0] if rows else None

    def is_session_expired(self, session: SessionStore) -> bool:
        """
        True when the session carries no valid, unexpired login.

        A live session has its idle expiry pushed forward as a side effect.
        """
        auth = self.auth
        if not auth.session_key:
            logger.info("Auth Key not defined.")
            return True

        if not session.exists(auth.session_key):
            logger.info("Auth Key [%s] not exist or expired.", auth.session_key)
            return True

        row = self._row_for_session(session)
        if row is None:
            logger.info("User not found in database, cookie value not match")
            return True

        expires = row.get(auth.expire_field)
        if expires is None or expires.is_null or utcnow() > expires.value:
            logger.info("Idle time expired, please sign in again")
            return True

        auth.model.update([SQLField(auth.expire_field, auth.expiration_from_now())], row.value(auth.model.pk_field))
        return False

    def kill_session(self, session: SessionStore):
        """Force the logged-in row's expiry into the past. The token column is left as is."""
        auth = self.auth
        if not auth.session_key or not session.exists(auth.session_key):
            logger.info("Auth Key [%s] not exist or expired.", auth.session_key)
            return

        row = self._row_for_session(session, extra_conditions=False)
        if row is None:
            return
        past = utcnow() - timedelta(seconds=1)
        auth.model.update([SQLField(auth.expire_field, past)], row.value(auth.model.pk_field))
