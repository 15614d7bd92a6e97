"""Per-client request limits on the REST API."""

from __future__ import annotations

from fastapi.testclient import TestClient

from app.config import get_settings
from app.core.rate_limit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_limiter_blocks_until_window_ends():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)

    assert limiter.allow("k", limit=2, window_seconds=60).remaining == 1
    assert limiter.allow("k", limit=2, window_seconds=60).allowed
    clock.now += 15
    blocked = limiter.allow("k", limit=2, window_seconds=60)
    assert not blocked.allowed
    assert blocked.retry_after_seconds == 45
    assert limiter.allow("other", limit=2, window_seconds=60).allowed

    clock.now += 45
    assert limiter.allow("k", limit=2, window_seconds=60).allowed


def test_auth_endpoints_are_limited_per_client(client: TestClient, monkeypatch):
    monkeypatch.setattr(get_settings(), "rate_limit_auth_max_requests", 2)
    payload = {"login": "mallory", "password": "wrong-password"}

    statuses = [client.post("/api/auth/login", json=payload).status_code for _ in range(3)]

    assert statuses == [401, 401, 429]
    blocked = client.post("/api/auth/login", json=payload)
    assert blocked.json()["detail"] == "Too many authentication attempts, please try again later."
    assert int(blocked.headers["Retry-After"]) > 0
    assert client.get("/api/").status_code == 200


def test_api_limit_covers_every_route(client: TestClient, monkeypatch):
    monkeypatch.setattr(get_settings(), "rate_limit_api_max_requests", 3)

    statuses = [client.get("/api/chats").status_code for _ in range(3)]
    assert statuses == [401, 401, 401]
    assert client.get("/api/").status_code == 429
    assert client.get("/health").status_code == 200


def test_limits_can_be_disabled(client: TestClient, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "rate_limit_enabled", False)
    monkeypatch.setattr(settings, "rate_limit_api_max_requests", 1)

    assert [client.get("/api/").status_code for _ in range(3)] == [200, 200, 200]
