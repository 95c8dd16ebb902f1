from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func
from mvckit.database import Base


class User(Base):
    """
    Credentials table read by the login flow.

    Design notes:
    - username is unique and indexed for the login lookup
    - password holds the argon2 hash, never the plain password
    - hash_code is the current session token, written on login
    - expires_at is the idle-expiry timestamp (naive UTC), advanced on
      every authenticated request and forced into the past on logout
    - active lets deployments scope logins with an extra condition

    Rows are read and written through mvckit.model.Model; this class only
    exists so init_db() can create the table.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False, index=True)
    password = Column(String(255), nullable=False)
    hash_code = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    active = Column(Integer, nullable=False, server_default="1")
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Session checks look rows up by token
    __table_args__ = (
        Index('ix_users_hash_code', 'hash_code'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"
