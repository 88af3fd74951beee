"""
Shared test fixtures.

Upstream traffic never leaves the process: a stub transport adapter is
mounted on the gateway's requests.Session and answers from a table of
canned responses, recording every request it receives. Time is a fake
clock shared by the limiter and the in-memory store.
"""

from __future__ import annotations

import io
import json

import pytest
import redis
import requests
from requests.adapters import HTTPAdapter
from urllib3.response import HTTPResponse

from edge_gateway.app import create_app
from edge_gateway.config import GatewayConfig, RateLimitSettings
from edge_gateway.store import MemoryStore

UPSTREAM = "https://upstream.test"

CLIENT_IP = "203.0.113.7"
CLIENT_HEADERS = {"CF-Connecting-IP": CLIENT_IP, "CF-IPCountry": "NL"}


# ── Helpers ────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubUpstream(HTTPAdapter):
    """Transport adapter standing in for the upstream origin.

    `routes` maps a full URL to either (status, headers, body) or an
    exception to raise. Unknown URLs get `default`.
    """

    def __init__(self) -> None:
        super().__init__()
        self.routes: dict = {}
        self.default = (200, [("Content-Type", "text/plain")], b"upstream ok")
        self.sent: list[requests.PreparedRequest] = []

    def send(self, request, **kwargs):
        self.sent.append(request)
        outcome = self.routes.get(request.url, self.default)
        if isinstance(outcome, Exception):
            raise outcome

        status, headers, body = outcome
        raw = HTTPResponse(
            body=io.BytesIO(body),
            headers=headers,
            status=status,
            preload_content=False,
            decode_content=False,
            request_method=request.method,
        )
        return self.build_response(request, raw)

    @property
    def last(self) -> requests.PreparedRequest:
        return self.sent[-1]


class BrokenStore(MemoryStore):
    """Store whose backend is down for the selected operations."""

    def __init__(self, fail_on=("get", "put", "incr"), **kwargs):
        super().__init__(**kwargs)
        self.fail_on = set(fail_on)

    def get(self, key):
        if "get" in self.fail_on:
            raise redis.exceptions.ConnectionError("connection refused")
        return super().get(key)

    def put(self, key, record, ttl_seconds):
        if "put" in self.fail_on:
            raise redis.exceptions.TimeoutError("timed out")
        super().put(key, record, ttl_seconds)

    def incr(self, key, ttl_seconds):
        if "incr" in self.fail_on:
            raise redis.exceptions.ConnectionError("connection refused")
        return super().incr(key, ttl_seconds)


def make_config(**overrides) -> GatewayConfig:
    rate_limit = overrides.pop(
        "rate_limit", RateLimitSettings(max_requests=3, window_seconds=60)
    )
    overrides.setdefault("upstream", UPSTREAM)
    return GatewayConfig(rate_limit=rate_limit, **overrides)


def read_events(capsys) -> list[dict]:
    """Parse the JSON event lines written to stdout so far."""
    out = capsys.readouterr().out
    return [json.loads(line) for line in out.splitlines() if line.startswith("{")]


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture()
def upstream() -> StubUpstream:
    return StubUpstream()


@pytest.fixture()
def session(upstream) -> requests.Session:
    s = requests.Session()
    s.mount(UPSTREAM, upstream)
    return s


@pytest.fixture()
def make_client(store, session, clock):
    """Factory: Flask test client for a gateway built with config overrides."""

    def _make(**overrides):
        app = create_app(make_config(**overrides), store=store, session=session, clock=clock)
        return app.test_client()

    return _make


@pytest.fixture()
def client(make_client):
    return make_client()
