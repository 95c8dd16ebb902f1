from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
import secrets
from datetime import datetime, timedelta, timezone

# Argon2 hasher with secure defaults
# Argon2id is recommended variant (combines Argon2i and Argon2d)
# Memory cost, time cost, and parallelism are the library defaults
ph = PasswordHasher()

# Hash checked when the submitted username does not exist, so a lookup
# miss costs the same as a wrong password. Built once, with the same
# parameters as real hashes.
DUMMY_PASSWORD_HASH = ph.hash(secrets.token_hex(16))

def hash_password(password: str) -> str:
    """
    Hash password using Argon2id.

    Returns hash string that includes algorithm parameters and salt.
    Format: $argon2id$v=19$m=65536,t=3,p=4$salt$hash
    """
    return ph.hash(password)

def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against stored hash.

    Uses the library's constant-time comparison.
    Returns False for any mismatch or malformed hash to avoid information leakage.
    """
    try:
        return ph.verify(password_hash, password)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False

def generate_session_token() -> str:
    """
    Generate cryptographically secure session token.

    Uses 64 bytes (512 bits) of randomness.
    Hex encoded = 128 character string.
    """
    return secrets.token_hex(64)

def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in DATETIME columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def expiration_from_now(idle: timedelta) -> datetime:
    return utcnow() + idle
