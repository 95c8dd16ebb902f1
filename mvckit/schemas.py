from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Optional


class SignupRequest(BaseModel):
    """
    Signup payload validation.

    Security notes:
    - Password minimum 8 chars (NIST SP 800-63B recommendation)
    - Maximum 128 chars to bound hashing cost
    - No complexity rules (length is more important than character variety)
    """
    username: str
    password: str

    @field_validator('username')
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('Username is required')
        if len(v) > 255:
            raise ValueError('Username too long')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters')
        if len(v) > 128:
            raise ValueError('Password too long')
        return v


class LoginRequest(BaseModel):
    """
    Login payload.

    Fields are optional on purpose: an incomplete form goes through the
    same generic failure path as a wrong password instead of a 422.
    """
    username: str = ""
    password: str = ""


class UserResponse(BaseModel):
    """
    Safe user representation for API responses.

    Built from the scrubbed login snapshot; never includes the password
    hash or the session token.
    """
    id: int
    username: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class MessageResponse(BaseModel):
    """
    Generic message response for operations without specific return data.
    """
    message: str
