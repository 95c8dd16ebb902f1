import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """
    What the auth controller needs from a session.

    Any per-request key/value store with these five operations will do.
    """

    def get(self, key: str, default: Any = None) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...

    def exists(self, key: str) -> bool: ...

    def renew_token(self) -> None: ...

    def pop(self, key: str, default: Any = None) -> Any: ...


@dataclass
class _Entry:
    expires_at: float
    data: dict = field(default_factory=dict)


class SessionManager:
    """
    Server-side session storage.

    Session ids are opaque random strings sent to the browser in a cookie;
    all data stays in this process. Sessions expire ``lifetime`` after they
    were created, regardless of activity (idle expiry of logins is tracked
    in the credentials table). A background sweep, run between start()
    and stop(), drops expired sessions nobody comes back for.
    """

    def __init__(
        self,
        lifetime: timedelta = timedelta(hours=24),
        clock: Callable[[], float] = time.time,
        cleanup_period: timedelta = timedelta(minutes=5),
    ):
        self.lifetime = lifetime
        self.cleanup_period = cleanup_period
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, _Entry] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    def load(self, session_id: Optional[str]) -> "Session":
        """Handle for the session behind a cookie value; unknown or expired ids start empty."""
        with self._lock:
            entry = self._sessions.get(session_id) if session_id else None
            if entry is not None and entry.expires_at <= self._clock():
                del self._sessions[session_id]
                entry = None
        return Session(self, session_id if entry is not None else None)

    def _new_id(self) -> str:
        return secrets.token_urlsafe(32)

    def _entry(self, session_id: Optional[str]) -> Optional[_Entry]:
        return self._sessions.get(session_id) if session_id else None

    def _create(self, data: Optional[dict] = None) -> str:
        session_id = self._new_id()
        self._sessions[session_id] = _Entry(self._clock() + self.lifetime.total_seconds(), dict(data or {}))
        return session_id

    def cleanup(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [sid for sid, e in self._sessions.items() if e.expires_at <= now]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logger.info("Session store: removed %d expired sessions", len(expired))
        return len(expired)

    def _cleanup_loop(self):
        period = self.cleanup_period.total_seconds()
        while not self._stop.wait(period):
            self.cleanup()

    def start(self):
        """Start the background sweep of expired sessions."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._cleanup_loop, name="session-cleanup", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __len__(self):
        with self._lock:
            return len(self._sessions)


class Session:
    """
    One request's view of a session.

    Nothing is stored until the first put(). After renew_token() or the
    first put(), ``id`` holds the value the response cookie must carry and
    ``modified`` is True.
    """

    def __init__(self, manager: SessionManager, session_id: Optional[str]):
        self._manager = manager
        self.id = session_id
        self.modified = False

    def get(self, key: str, default: Any = None) -> Any:
        with self._manager._lock:
            entry = self._manager._entry(self.id)
            return default if entry is None else entry.data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        with self._manager._lock:
            entry = self._manager._entry(self.id)
            if entry is None:
                self.id = self._manager._create()
                self.modified = True
                entry = self._manager._entry(self.id)
            entry.data[key] = value

    def exists(self, key: str) -> bool:
        with self._manager._lock:
            entry = self._manager._entry(self.id)
            return entry is not None and key in entry.data

    def pop(self, key: str, default: Any = None) -> Any:
        with self._manager._lock:
            entry = self._manager._entry(self.id)
            return default if entry is None else entry.data.pop(key, default)

    def renew_token(self) -> None:
        """Move the data to a fresh id so a pre-login id cannot be reused."""
        with self._manager._lock:
            entry = self._manager._sessions.pop(self.id, None) if self.id else None
            self.id = self._manager._create(entry.data if entry is not None else None)
            self.modified = True

    def destroy(self) -> None:
        with self._manager._lock:
            if self.id:
                self._manager._sessions.pop(self.id, None)
            self.id = None
            self.modified = True
