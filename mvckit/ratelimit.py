"""
Failed-attempt tracking for login abuse mitigation.

A RateLimiter maps an identifier (client IP or username) to a record of
failed attempts. Each identifier moves through::

    clean -> accumulating -> blocked -> (block expires) -> clean

Reaching ``max_attempts`` failures blocks the identifier for
``block_duration``. A successful login deletes the record. A background
sweep drops records whose block ended more than one further block
duration ago, and unblocked records whose last failure is more than two
block durations old, so identifiers that fail once and never return do
not pile up forever.
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers hold off new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class AttemptRecord:
    count: int
    first_attempt: float
    last_attempt: float
    # 0.0 while not blocked
    blocked_until: float = 0.0


class RateLimiter:
    def __init__(
        self,
        max_attempts: int,
        block_duration: timedelta,
        cleanup_period: timedelta = timedelta(minutes=5),
        clock: Callable[[], float] = time.time,
        name: str = "",
    ):
        self.max_attempts = max_attempts
        self.block_duration = block_duration
        self.cleanup_period = cleanup_period
        self.name = name
        self._clock = clock
        self._lock = ReadWriteLock()
        self._attempts: dict[str, AttemptRecord] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    @property
    def _block_seconds(self) -> float:
        return self.block_duration.total_seconds()

    def is_blocked(self, identifier: str) -> bool:
        with self._lock.read():
            record = self._attempts.get(identifier)
            return record is not None and self._clock() < record.blocked_until

    def record_failed_attempt(self, identifier: str):
        with self._lock.write():
            now = self._clock()
            record = self._attempts.get(identifier)

            if record is None:
                record = self._attempts[identifier] = AttemptRecord(count=0, first_attempt=now, last_attempt=now)
            elif record.blocked_until and now >= record.blocked_until:
                # previous block is over, start counting again
                record.count = 0
                record.first_attempt = now
                record.blocked_until = 0.0

            record.count += 1
            record.last_attempt = now
            if record.count >= self.max_attempts and not record.blocked_until:
                record.blocked_until = now + self._block_seconds
                logger.info(
                    "Rate limit exceeded for: %s - Blocked until: %s",
                    identifier,
                    _to_datetime(record.blocked_until).isoformat(),
                )

    def reset_attempts(self, identifier: str):
        with self._lock.write():
            self._attempts.pop(identifier, None)

    def remaining_attempts(self, identifier: str) -> int:
        with self._lock.read():
            record = self._attempts.get(identifier)
            if record is None:
                return self.max_attempts
            return max(self.max_attempts - record.count, 0)

    def blocked_until(self, identifier: str) -> Optional[datetime]:
        with self._lock.read():
            record = self._attempts.get(identifier)
            if record is None or not record.blocked_until:
                return None
            return _to_datetime(record.blocked_until)

    def stats(self) -> dict:
        with self._lock.read():
            now = self._clock()
            blocked = sum(1 for r in self._attempts.values() if now < r.blocked_until)
            return {
                "total_tracked": len(self._attempts),
                "currently_blocked": blocked,
                "max_attempts": self.max_attempts,
                "block_duration_minutes": self.block_duration.total_seconds() / 60,
            }

    def _is_stale(self, record: AttemptRecord, now: float) -> bool:
        if record.blocked_until:
            return now > record.blocked_until + self._block_seconds
        return now > record.last_attempt + 2 * self._block_seconds

    def cleanup(self) -> int:
        """
        Drop records whose block ended more than one block duration ago,
        and unblocked records with no failure for two block durations.
        """
        with self._lock.write():
            now = self._clock()
            expired = [
                identifier
                for identifier, record in self._attempts.items()
                if self._is_stale(record, now)
            ]
            for identifier in expired:
                del self._attempts[identifier]
        if expired:
            logger.info("Rate limiter %s: removed %d expired records", self.name, len(expired))
        return len(expired)

    def _cleanup_loop(self):
        period = self.cleanup_period.total_seconds()
        while not self._stop.wait(period):
            self.cleanup()

    def start(self):
        """Start the background sweep. Calling it twice is harmless."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._cleanup_loop, name=f"ratelimit-cleanup-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
