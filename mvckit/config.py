from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Uses pydantic for validation and type safety.
    """
    environment: str = "development"
    debug: bool = False

    # Logging: INFO messages for auth and rate-limit events, tracebacks on 500s
    enable_info_log: bool = True
    show_stack_on_error: bool = False

    database_url: str = "sqlite:///./mvckit.db"
    db_pool_size: int = 10
    db_pool_recycle_seconds: int = 180
    # Deadline for INSERT/UPDATE/DELETE so a stalled connection cannot hang a request
    db_write_timeout_seconds: float = 3.0

    # Session cookie; the cookie only carries an opaque session id
    session_cookie_name: str = "session_id"
    session_lifetime_hours: int = 24
    # How often expired sessions are swept from memory
    session_cleanup_seconds: int = 300

    # secure=True enforces HTTPS only - must be True in production
    cookie_secure: bool = False
    cookie_domain: str = "localhost"
    cookie_httponly: bool = True
    cookie_samesite: str = "lax"

    # Credentials table mapping
    auth_table: str = "users"
    auth_pk_field: str = "id"
    auth_username_field: str = "username"
    auth_password_field: str = "password"
    auth_hash_code_field: str = "hash_code"
    auth_expire_field: str = "expires_at"
    auth_session_key: str = "auth_token"
    # Sliding idle expiry, advanced on every authenticated request
    auth_idle_minutes: int = 30
    # Only log in rows with active = 1
    auth_require_active: bool = True
    login_fail_message: str = "Invalid credentials"
    logged_in_message: str = "Logged in"

    # Login rate limiting, tracked separately per client IP and per username
    ratelimit_enabled: bool = True
    ratelimit_ip_max_attempts: int = 10
    ratelimit_ip_block_minutes: int = 15
    ratelimit_username_max_attempts: int = 5
    ratelimit_username_block_minutes: int = 30
    ratelimit_cleanup_seconds: int = 300

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance. Load once, reuse throughout application lifecycle.
    """
    return Settings()
