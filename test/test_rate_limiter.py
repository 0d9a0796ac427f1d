"""Tests for per-key exponential backoff."""

import httpx
import pytest

from dashdata.dashboard_client import DashboardAPIError
from dashdata.rate_limiter import RateLimiter, is_quota_error


def _make_limiter(clock, base=1.0, maximum=60.0, floor=30.0):
    limiter = RateLimiter(base_backoff=base, max_backoff=maximum, quota_floor=floor)
    limiter._clock = clock
    return limiter


class TestRateLimiter:
    def test_unknown_key_allowed(self, clock):
        limiter = _make_limiter(clock)
        decision = limiter.should_allow("insights:mau")
        assert decision.allowed is True
        assert decision.wait is None
        assert limiter.state("insights:mau") is None

    def test_backoff_doubles(self, clock):
        limiter = _make_limiter(clock)
        backoffs = []
        for _ in range(3):
            limiter.record_failure("k")
            backoffs.append(limiter.state("k").backoff)
        assert backoffs == [1.0, 2.0, 4.0]
        assert limiter.state("k").attempts == 3

    def test_backoff_capped(self, clock):
        limiter = _make_limiter(clock, base=1.0, maximum=5.0)
        for _ in range(10):
            limiter.record_failure("k")
        assert limiter.state("k").backoff == 5.0

    def test_denied_inside_window(self, clock):
        limiter = _make_limiter(clock, base=4.0)
        limiter.record_failure("k")
        clock.advance(1.5)
        decision = limiter.should_allow("k")
        assert decision.allowed is False
        assert decision.wait == pytest.approx(2.5)

    def test_allowed_after_window_without_reset(self, clock):
        limiter = _make_limiter(clock, base=4.0)
        limiter.record_failure("k")
        clock.advance(4.0)
        assert limiter.should_allow("k").allowed is True
        # The next failure still compounds
        limiter.record_failure("k")
        assert limiter.state("k").backoff == 8.0

    def test_success_resets(self, clock):
        limiter = _make_limiter(clock)
        for _ in range(3):
            limiter.record_failure("k")
        limiter.record_success("k")
        assert limiter.should_allow("k").allowed is True
        assert limiter.state("k") is None

    def test_quota_floor_on_first_failure(self, clock):
        limiter = _make_limiter(clock, floor=30.0)
        limiter.record_failure("k", is_quota_error=True)
        assert limiter.state("k").backoff >= 30.0
        clock.advance(29)
        assert limiter.should_allow("k").allowed is False

    def test_quota_floor_does_not_lower_large_backoff(self, clock):
        limiter = _make_limiter(clock, maximum=120.0, floor=30.0)
        for _ in range(7):
            limiter.record_failure("k")
        limiter.record_failure("k", is_quota_error=True)
        assert limiter.state("k").backoff == 120.0

    def test_keys_independent(self, clock):
        limiter = _make_limiter(clock)
        limiter.record_failure("insights:mau")
        assert limiter.should_allow("insights:sessions").allowed is True

    def test_state_is_a_copy(self, clock):
        limiter = _make_limiter(clock)
        limiter.record_failure("k")
        limiter.state("k").backoff = 0
        assert limiter.state("k").backoff == 1.0


class _StatusError(Exception):
    def __init__(self, message, status):
        super().__init__(message)
        self.status = status


class TestIsQuotaError:
    @pytest.mark.parametrize("status", [429, 403])
    def test_quota_status_codes(self, status):
        assert is_quota_error(DashboardAPIError(f"HTTP {status}", status_code=status))

    def test_status_attribute(self):
        assert is_quota_error(_StatusError("nope", 429))

    def test_httpx_status_error(self):
        request = httpx.Request("POST", "http://test/api/insights")
        response = httpx.Response(429, request=request)
        error = httpx.HTTPStatusError("error", request=request, response=response)
        assert is_quota_error(error)

    @pytest.mark.parametrize(
        "message",
        ["Quota exhausted", "RATE LIMIT exceeded", "Too Many Requests, slow down"],
    )
    def test_message_markers(self, message):
        assert is_quota_error(Exception(message))

    def test_other_errors(self):
        assert not is_quota_error(DashboardAPIError("HTTP 500", status_code=500))
        assert not is_quota_error(ValueError("boom"))
        assert not is_quota_error(None)

    def test_available_on_limiter(self):
        assert RateLimiter.is_quota_error(Exception("quota"))
        assert RateLimiter().is_quota_error(Exception("quota"))
