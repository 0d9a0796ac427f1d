"""
Shared test fixtures for dashdata.

Provides:
- A controllable clock for cache and rate limiter tests
- A fake upstream dashboard API (pytest-httpserver)
- Temporary config files
"""

import pytest
from pytest_httpserver import HTTPServer


class FakeClock:
    """Controllable clock for deterministic cache tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def fake_dashboard():
    """
    A real HTTP server that impersonates the dashboard's /api routes.

    Tests configure responses with expect_request() before making requests.
    """
    server = HTTPServer(host="127.0.0.1")
    server.start()
    yield server
    server.clear()
    if server.is_running():
        server.stop()


@pytest.fixture()
def config_file(tmp_path):
    """Write a temporary config.yaml and return its path."""
    content = """\
api_base_url: "http://localhost:3000"
cache:
  kpi_ttl: 120
  insights_ttl: 1800
  stale_fraction: 0.5
rate_limit:
  base_backoff: 2
  max_backoff: 30
  quota_floor: 20
prefetch_delay: 0.1
"""
    p = tmp_path / "config.yaml"
    p.write_text(content)
    return str(p)
