"""
Tests for Rate Limiter Module

Time is driven by a fake clock shared by the limiter and the state repository.

Run with: pytest tests/test_rate_limiter.py -v
"""

import threading
from datetime import datetime, timezone

import pytest

from config.settings import RateLimitConfig
from botkit.exceptions import RateLimitExceeded
from botkit.rate_limiter import Allowed, Denied, RateLimiter
from botkit.state import InMemoryStateRepository, SQLStateRepository

DAY = 86400


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc).timestamp()):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    state = InMemoryStateRepository(clock=clock)
    return RateLimiter(state, config=RateLimitConfig(max_requests_per_day=60, token_limit_per_day=1000))


class TestCheckRateLimit:
    """Tests for the sliding request window."""

    def test_sixty_first_request_denied(self, limiter):
        """Test 60 requests pass and the 61st is denied with a positive retry."""
        for i in range(60):
            decision = limiter.check_rate_limit("guest:abc")
            assert isinstance(decision, Allowed)
            assert decision.remaining == 59 - i

        denied = limiter.check_rate_limit("guest:abc")
        assert isinstance(denied, Denied)
        assert denied.allowed is False
        assert denied.retry_after == pytest.approx(DAY)
        assert denied.reason == "rate_limit"
        assert denied.limit == 60

    def test_window_slides(self, limiter, clock):
        """Test a slot frees up exactly when the oldest request leaves the window."""
        limiter.check_rate_limit("user:1")
        clock.advance(3600)
        for _ in range(59):
            limiter.check_rate_limit("user:1")

        clock.advance(DAY - 3600 - 1)
        denied = limiter.check_rate_limit("user:1")
        assert denied.retry_after == pytest.approx(1)

        clock.advance(1)
        assert limiter.check_rate_limit("user:1").allowed is True
        assert limiter.check_rate_limit("user:1").allowed is False

    def test_denied_requests_not_recorded(self, limiter, clock):
        for _ in range(61):
            limiter.check_rate_limit("user:2")
        for _ in range(5):
            limiter.check_rate_limit("user:2")

        clock.advance(DAY)
        assert limiter.get_remaining_limits("user:2")["requests"]["used"] == 0

    def test_users_are_independent(self, limiter):
        for _ in range(60):
            limiter.check_rate_limit("user:3")
        assert limiter.check_rate_limit("user:3").allowed is False
        assert limiter.check_rate_limit("user:4").allowed is True

    def test_denied_response_shape(self, limiter, clock):
        for _ in range(61):
            decision = limiter.check_rate_limit("user:5")

        response = decision.to_response()
        assert response["error"] == "rate_limit_exceeded"
        assert response["retry_after_seconds"] > 0
        assert response["reset_time"] == "2026-03-11T12:00:00+00:00"

    def test_action_quota(self, clock):
        state = InMemoryStateRepository(clock=clock)
        limiter = RateLimiter(state, config=RateLimitConfig(actions={"document_upload": (60, 2)}))

        assert limiter.check_rate_limit("user:6", "document_upload").allowed
        assert limiter.check_rate_limit("user:6", "document_upload").allowed
        assert limiter.check_rate_limit("user:6", "document_upload").allowed is False
        assert limiter.check_rate_limit("user:6", "chat_message").allowed

        clock.advance(60)
        assert limiter.check_rate_limit("user:6", "document_upload").allowed

    def test_concurrent_requests_respect_limit(self, limiter):
        """Test parallel callers never exceed the quota."""
        results = []

        def worker():
            for _ in range(10):
                results.append(limiter.check_rate_limit("user:7").allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 60
        assert results.count(False) == 20

    def test_window_write_is_versioned(self, limiter):
        limiter.check_rate_limit("user:9")
        _, version = limiter.state.get_versioned("rate_limit:user:9:chat_message")
        limiter.check_rate_limit("user:9")
        assert limiter.state.get_versioned("rate_limit:user:9:chat_message")[1] != version


class InterleavingRepository(SQLStateRepository):
    """SQL repository that runs another caller just before its first conditional write."""

    def __init__(self, database, clock, before_write):
        super().__init__(database, clock=clock)
        self.before_write = before_write

    def compare_and_set(self, key, value, version, ttl=None):
        if self.before_write is not None:
            hook, self.before_write = self.before_write, None
            hook()
        return super().compare_and_set(key, value, version, ttl)


class TestSharedBackend:
    """Limiters in separate workers sharing one state_entries table."""

    def test_last_slot_taken_once(self, database, clock):
        """Test a slot taken between another worker's read and write is not handed out twice."""
        config = RateLimitConfig(max_requests_per_day=3)
        other_worker = RateLimiter(SQLStateRepository(database, clock=clock), config=config)
        assert other_worker.check_rate_limit("user:8").allowed
        assert other_worker.check_rate_limit("user:8").allowed

        seen = []
        racing = InterleavingRepository(
            database,
            clock,
            before_write=lambda: seen.append(other_worker.check_rate_limit("user:8")),
        )
        decision = RateLimiter(racing, config=config).check_rate_limit("user:8")

        assert seen[0].allowed is True
        assert decision.allowed is False
        assert len(racing.get("rate_limit:user:8:chat_message")) == 3


class TestOverrides:
    def test_user_limit_override(self, limiter):
        limiter.set_user_limit("user:vip", "chat_message", max_requests=100)
        for _ in range(100):
            assert limiter.check_rate_limit("user:vip").allowed
        assert limiter.check_rate_limit("user:vip").allowed is False
        assert limiter.get_quota("user:vip", "chat_message") == (DAY, 100)

    def test_override_window(self, limiter, clock):
        limiter.set_user_limit("user:burst", "chat_message", max_requests=1, window=10)
        assert limiter.check_rate_limit("user:burst").allowed
        assert limiter.check_rate_limit("user:burst").retry_after == pytest.approx(10)

    def test_clear_override(self, limiter):
        limiter.set_user_limit("user:vip", "chat_message", max_requests=5)
        limiter.clear_user_limit("user:vip", "chat_message")
        assert limiter.get_quota("user:vip", "chat_message") == (DAY, 60)


class TestTokenQuota:
    """Tests for the daily token cap."""

    def test_quota_exhausted(self, limiter):
        assert limiter.record_token_usage("user:1", 600) == 600
        assert limiter.check_token_quota("user:1").allowed
        assert limiter.record_token_usage("user:1", 400) == 1000

        denied = limiter.check_token_quota("user:1")
        assert denied.reason == "token_limit"
        assert denied.retry_after == pytest.approx(12 * 3600)

    def test_quota_resets_next_day(self, limiter, clock):
        limiter.record_token_usage("user:1", 5000)
        clock.advance(12 * 3600)
        assert limiter.get_token_usage("user:1") == 0
        assert limiter.check_token_quota("user:1").allowed

    def test_non_positive_usage_ignored(self, limiter):
        limiter.record_token_usage("user:1", 10)
        assert limiter.record_token_usage("user:1", 0) == 10
        assert limiter.record_token_usage("user:1", -5) == 10

    def test_token_override(self, limiter):
        limiter.set_user_limit("user:1", "token_usage", max_requests=50)
        limiter.record_token_usage("user:1", 50)
        assert limiter.check_token_quota("user:1").allowed is False


class TestEnforceAndReporting:
    def test_enforce_raises(self, limiter):
        for _ in range(60):
            limiter.enforce("user:1")
        with pytest.raises(RateLimitExceeded) as excinfo:
            limiter.enforce("user:1")
        assert excinfo.value.retry_after > 0

    def test_get_remaining_limits(self, limiter):
        limiter.check_rate_limit("user:1")
        limiter.check_rate_limit("user:1")
        limiter.record_token_usage("user:1", 250)

        remaining = limiter.get_remaining_limits("user:1")
        assert remaining["requests"]["used"] == 2
        assert remaining["requests"]["remaining"] == 58
        assert remaining["requests"]["reset_time"] == "2026-03-11T12:00:00+00:00"
        assert remaining["tokens"] == {
            "limit": 1000,
            "used": 250,
            "remaining": 750,
            "reset_time": "2026-03-11T00:00:00+00:00",
        }

    def test_remaining_does_not_record(self, limiter):
        limiter.get_remaining_limits("user:1")
        assert limiter.get_remaining_limits("user:1")["requests"]["used"] == 0

    def test_reset(self, limiter):
        limiter.check_rate_limit("user:1", "chat_message")
        limiter.check_rate_limit("user:1", "document_upload")

        assert limiter.reset("user:1", "chat_message") == 1
        assert limiter.reset("user:1") == 1
        assert limiter.get_remaining_limits("user:1", "document_upload")["requests"]["used"] == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
