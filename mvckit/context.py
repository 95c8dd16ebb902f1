import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from mvckit.authcontroller import AuthCondition, AuthController, AuthObject
from mvckit.config import Settings
from mvckit.database import Database, connect_database, init_db
from mvckit.model import Model
from mvckit.ratelimit import RateLimiter
from mvckit.sessions import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """
    Everything a request handler needs, built once at startup.

    Handlers receive it explicitly instead of reaching for module globals,
    so two applications with different settings can live in one process.
    """
    settings: Settings
    database: Database
    sessions: SessionManager
    auth: AuthController
    users: Model
    ip_limiter: Optional[RateLimiter] = None
    user_limiter: Optional[RateLimiter] = None

    def close(self):
        self.sessions.stop()
        for limiter in (self.ip_limiter, self.user_limiter):
            if limiter is not None:
                limiter.stop()
        self.database.close()


def build_rate_limiters(settings: Settings):
    if not settings.ratelimit_enabled:
        return None, None

    cleanup = timedelta(seconds=settings.ratelimit_cleanup_seconds)
    ip_limiter = RateLimiter(
        settings.ratelimit_ip_max_attempts,
        timedelta(minutes=settings.ratelimit_ip_block_minutes),
        cleanup_period=cleanup,
        name="ip",
    )
    user_limiter = RateLimiter(
        settings.ratelimit_username_max_attempts,
        timedelta(minutes=settings.ratelimit_username_block_minutes),
        cleanup_period=cleanup,
        name="username",
    )
    logger.info(
        "Rate limiting enabled: IP %d attempts / %d min, username %d attempts / %d min",
        settings.ratelimit_ip_max_attempts,
        settings.ratelimit_ip_block_minutes,
        settings.ratelimit_username_max_attempts,
        settings.ratelimit_username_block_minutes,
    )
    return ip_limiter, user_limiter


def build_context(settings: Settings, database: Optional[Database] = None) -> AppContext:
    """
    Connect, create bootstrap tables, register the credentials model and
    start the session and rate-limiter sweeps.
    """
    if database is None:
        database = connect_database(
            settings.database_url,
            pool_size=settings.db_pool_size,
            pool_recycle=settings.db_pool_recycle_seconds,
            write_timeout=settings.db_write_timeout_seconds,
            echo=settings.debug,
        )
    init_db(database.engine)

    users = Model().initialize(database, settings.auth_table, settings.auth_pk_field)

    conditions = []
    if settings.auth_require_active:
        conditions.append(AuthCondition(field="active", operator="=", value=1))

    auth_object = AuthObject(
        model=users,
        username_field=settings.auth_username_field,
        password_field=settings.auth_password_field,
        hash_code_field=settings.auth_hash_code_field,
        expire_field=settings.auth_expire_field,
        session_key=settings.auth_session_key,
        expire_after_idle=timedelta(minutes=settings.auth_idle_minutes),
        extra_conditions=conditions,
        logged_in_message=settings.logged_in_message,
        login_fail_message=settings.login_fail_message,
    )

    ip_limiter, user_limiter = build_rate_limiters(settings)
    for limiter in (ip_limiter, user_limiter):
        if limiter is not None:
            limiter.start()

    sessions = SessionManager(
        lifetime=timedelta(hours=settings.session_lifetime_hours),
        cleanup_period=timedelta(seconds=settings.session_cleanup_seconds),
    )
    sessions.start()

    return AppContext(
        settings=settings,
        database=database,
        sessions=sessions,
        auth=AuthController(auth_object, ip_limiter, user_limiter),
        users=users,
        ip_limiter=ip_limiter,
        user_limiter=user_limiter,
    )
