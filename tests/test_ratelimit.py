import threading
from datetime import timedelta

import pytest

from mvckit.ratelimit import RateLimiter

BLOCK = timedelta(minutes=15)


@pytest.fixture
def limiter(clock):
    return RateLimiter(3, BLOCK, clock=clock, name="test")


class TestStateMachine:
    def test_blocks_on_max_attempts(self, limiter):
        limiter.record_failed_attempt("x")
        limiter.record_failed_attempt("x")
        assert not limiter.is_blocked("x")
        assert limiter.remaining_attempts("x") == 1

        limiter.record_failed_attempt("x")
        assert limiter.is_blocked("x")
        assert limiter.remaining_attempts("x") == 0

    def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            limiter.record_failed_attempt("10.0.0.1")
        assert limiter.is_blocked("10.0.0.1")
        assert not limiter.is_blocked("10.0.0.2")
        assert limiter.remaining_attempts("10.0.0.2") == 3

    def test_reset_clears_block(self, limiter):
        for _ in range(3):
            limiter.record_failed_attempt("x")
        limiter.reset_attempts("x")
        assert not limiter.is_blocked("x")
        assert limiter.remaining_attempts("x") == 3
        assert limiter.blocked_until("x") is None

    def test_block_expires_and_count_restarts(self, limiter, clock):
        for _ in range(3):
            limiter.record_failed_attempt("x")

        clock.advance(BLOCK.total_seconds() - 1)
        assert limiter.is_blocked("x")

        clock.advance(1)
        assert not limiter.is_blocked("x")

        limiter.record_failed_attempt("x")
        assert limiter.remaining_attempts("x") == 2
        assert limiter.blocked_until("x") is None

    def test_block_is_set_once_per_episode(self, limiter, clock):
        for _ in range(3):
            limiter.record_failed_attempt("x")
        first = limiter.blocked_until("x")

        clock.advance(60)
        limiter.record_failed_attempt("x")
        assert limiter.blocked_until("x") == first

    def test_single_attempt_limit(self, clock):
        limiter = RateLimiter(1, BLOCK, clock=clock)
        limiter.record_failed_attempt("x")
        assert limiter.is_blocked("x")


class TestCleanup:
    def test_removes_blocked_records_after_block_plus_one_duration(self, limiter, clock):
        for _ in range(3):
            limiter.record_failed_attempt("blocked")

        clock.advance(2 * BLOCK.total_seconds())
        assert limiter.cleanup() == 0

        clock.advance(1)
        assert limiter.cleanup() == 1
        assert limiter.stats()["total_tracked"] == 0

    def test_removes_one_off_failures_after_two_durations(self, limiter, clock):
        limiter.record_failed_attempt("once")
        clock.advance(1000)
        limiter.record_failed_attempt("active")
        clock.advance(2 * BLOCK.total_seconds() - 1000)
        assert limiter.cleanup() == 0

        clock.advance(1)
        assert limiter.cleanup() == 1
        assert limiter.remaining_attempts("once") == 3
        assert limiter.remaining_attempts("active") == 2

    def test_random_identifiers_do_not_accumulate(self, limiter, clock):
        for i in range(1000):
            limiter.record_failed_attempt(f"user-{i}")

        clock.advance(30 * 24 * 3600)
        assert limiter.cleanup() == 1000
        assert limiter.stats()["total_tracked"] == 0

    def test_stats(self, limiter):
        for _ in range(3):
            limiter.record_failed_attempt("a")
        limiter.record_failed_attempt("b")

        assert limiter.stats() == {
            "total_tracked": 2,
            "currently_blocked": 1,
            "max_attempts": 3,
            "block_duration_minutes": 15.0,
        }

    def test_background_sweep_starts_and_stops(self, clock):
        limiter = RateLimiter(1, timedelta(seconds=1), cleanup_period=timedelta(milliseconds=10), clock=clock)
        limiter.record_failed_attempt("x")
        clock.advance(10)

        swept = threading.Event()
        original = limiter.cleanup

        def cleanup():
            removed = original()
            swept.set()
            return removed

        limiter.cleanup = cleanup
        with limiter:
            assert swept.wait(2)
        assert limiter._thread is None
        assert limiter.stats()["total_tracked"] == 0


def test_concurrent_failures_are_all_counted(clock):
    limiter = RateLimiter(1000, BLOCK, clock=clock)

    def hammer():
        for _ in range(100):
            limiter.record_failed_attempt("x")
            limiter.is_blocked("x")

    threads = [threading.Thread(target=hammer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert limiter.remaining_attempts("x") == 1000 - 800
