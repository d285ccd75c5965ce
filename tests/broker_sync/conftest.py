"""
Shared fixtures for broker sync tests.

FakeClock drives the governor without real sleeping.
FakeSession stands in for aiohttp.ClientSession with scripted routes.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import pytest

from broker_sync.config import RetryConfig
from broker_sync.governor import RequestGovernor


# ============================================================
# FAKE CLOCK
# ============================================================

class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================
# FAKE HTTP SESSION
# ============================================================

Scripted = Tuple[int, Any]


class FakeResponse:
    def __init__(self, status: int, payload: Any):
        self.status = status
        self._payload = payload

    async def json(self, content_type=None):
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload

    async def text(self):
        return self._payload if isinstance(self._payload, str) else json.dumps(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Scripted replacement for aiohttp.ClientSession.

    routes maps (METHOD, path) to one (status, payload) or to a list
    consumed in order (the last entry repeats). Unknown routes 404.
    """

    def __init__(self, routes: Dict[Tuple[str, str], Union[Scripted, List[Scripted]]]):
        self.routes = {key: list(value) if isinstance(value, list) else [value] for key, value in routes.items()}
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, params=None, json=None, data=None, headers=None):
        path = urlsplit(url).path if "://" in url else url
        self.requests.append({
            "method": method,
            "path": path,
            "params": params,
            "json": json,
            "data": data,
            "headers": dict(headers or {}),
        })
        scripted = self.routes.get((method, path))
        if not scripted:
            return FakeResponse(404, {"message": "Not Found"})
        status, payload = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        return FakeResponse(status, payload)

    def paths(self, method: Optional[str] = None) -> List[str]:
        return [r["path"] for r in self.requests if method is None or r["method"] == method]

    async def close(self):
        self.closed = True


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def governor(clock):
    """Governor on a fake clock; waits and backoff advance time instantly."""
    return RequestGovernor(
        retry_config=RetryConfig(max_attempts=3, backoff_base_seconds=2.0),
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def now():
    return datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)
