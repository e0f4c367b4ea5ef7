"""
Pytest fixtures: an in-memory HTTP transport and a manual clock.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

import pytest
from requests.structures import CaseInsensitiveDict

from request_dispatcher import DispatcherConfig


BASE_URL = "http://test.local"


class FakeResponse:
    def __init__(self, status_code=200, text="", reason="OK", headers=None):
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")
        self.reason = reason
        self.headers = CaseInsensitiveDict(headers or {})

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@dataclass
class RecordedRequest:
    method: str
    url: str
    data: object
    headers: dict
    timeout: Optional[float]
    allow_redirects: bool


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now += seconds


@dataclass
class FakeSession:
    """
    Stand-in for requests.Session.

    routes maps a full URL to a FakeResponse or an exception to raise.
    latencies maps a URL to seconds the clock advances during the request.
    When gate is set, every request blocks until the event is set.
    """
    routes: dict = field(default_factory=dict)
    default: FakeResponse = field(default_factory=lambda: FakeResponse(200, "ok"))
    clock: Optional[FakeClock] = None
    latencies: dict = field(default_factory=dict)
    gate: Optional[threading.Event] = None
    started: threading.Event = field(default_factory=threading.Event)
    requests: list = field(default_factory=list)
    closed: bool = False

    def __post_init__(self):
        self._lock = threading.Lock()

    def request(self, method, url, data=None, headers=None, timeout=None, allow_redirects=True):
        with self._lock:
            self.requests.append(RecordedRequest(method, url, data, dict(headers or {}), timeout, allow_redirects))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(10)
        if self.clock is not None:
            self.clock.advance(self.latencies.get(url, 0))
        result = self.routes.get(url, self.default)
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        self.closed = True

    @property
    def urls(self):
        with self._lock:
            return [r.url for r in self.requests]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(clock):
    return FakeSession(clock=clock)


@pytest.fixture
def config():
    return DispatcherConfig(base_url=BASE_URL, threads=1)
