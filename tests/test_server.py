from typing import Optional

import pytest
from fastapi.testclient import TestClient

from fakes import make_resolver, redirect
from qrcheck.server import create_app
from qrcheck.workflows.engine_config import MALICIOUS_HOSTS_PATH, SHORTENERS_PATH
from qrcheck.workflows.inspector import InspectionEngine
from qrcheck.workflows.rate_limiter import FixedWindowRateLimiter
from qrcheck.workflows.reputation import ShortenerDirectory, StaticHostFeed
from qrcheck.workflows.settings import EngineSettings
from qrcheck.workflows.ttl_cache import TTLCache

ROUTES = {
    "https://bit.ly/x": redirect("https://example.com/landing"),
    "https://example.com/landing": redirect("https://example.com/final", status=302),
}


def build_client(limit: int = 10, engine: Optional[InspectionEngine] = None):
    if engine is None:
        resolver, _ = make_resolver(ROUTES, cache=TTLCache(max_age=60, max_entries=10))
        engine = InspectionEngine(
            resolver,
            shorteners=ShortenerDirectory.load(SHORTENERS_PATH),
            feeds=[StaticHostFeed.load(MALICIOUS_HOSTS_PATH)],
        )
    app = create_app(engine=engine, limiter=FixedWindowRateLimiter(limit, 60), settings=EngineSettings())
    return TestClient(app), engine


def test_resolve_returns_chain_with_no_store() -> None:
    client, _ = build_client()
    with client:
        resp = client.post("/api/resolve", json={"url": "https://bit.ly/x"})

    assert resp.status_code == 200
    assert resp.headers["cache-control"] == "no-store"
    body = resp.json()
    assert body["ok"] is True
    analysis = body["analysis"]
    assert analysis["input_url"] == "https://bit.ly/x"
    assert analysis["redirect_chain"] == [
        "https://bit.ly/x",
        "https://example.com/landing",
        "https://example.com/final",
    ]
    assert analysis["resolved_url"] == "https://example.com/final"
    assert analysis["hop_count"] == 2
    assert analysis["failure_reason"] is None


def test_blocked_private_target_is_reported_not_fetched() -> None:
    client, _ = build_client()
    with client:
        resp = client.post("/api/resolve", json={"url": "http://127.0.0.1:8080/admin"})

    assert resp.status_code == 200
    assert resp.json()["analysis"]["failure_reason"] == "network_error"


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"url": ""}, "URL is required"),
        ({"url": "example.com"}, "URL must be absolute"),
        ({"url": "ftp://example.com/"}, "Only http and https URLs can be resolved"),
        ({"url": "https://example.com/" + "a" * 2100}, "URL exceeds 2048 characters"),
        ({}, "Invalid request body"),
        ({"url": 42}, "Invalid request body"),
    ],
)
def test_resolve_rejects_bad_input(payload, message: str) -> None:
    client, _ = build_client()
    with client:
        resp = client.post("/api/resolve", json=payload)

    assert resp.status_code == 400
    assert resp.json() == {"ok": False, "error": message}
    assert resp.headers["cache-control"] == "no-store"


def test_rate_limit_rejects_with_retry_after() -> None:
    client, _ = build_client(limit=2)
    with client:
        statuses = [client.post("/api/resolve", json={"url": "https://bit.ly/x"}).status_code for _ in range(2)]
        rejected = client.post("/api/resolve", json={"url": "https://bit.ly/x"})

    assert statuses == [200, 200]
    assert rejected.status_code == 429
    assert 0 < int(rejected.headers["retry-after"]) <= 60
    body = rejected.json()
    assert body["ok"] is False
    assert body["retry_after"] == int(rejected.headers["retry-after"])
    assert body["reset_time"] > 0


def test_invalid_requests_still_count_against_the_window() -> None:
    client, _ = build_client(limit=1)
    with client:
        first = client.post("/api/resolve", json={"url": "nope"})
        second = client.post("/api/resolve", json={"url": "https://bit.ly/x"})

    assert first.status_code == 400
    assert second.status_code == 429


def test_clients_are_keyed_by_forwarded_address() -> None:
    client, _ = build_client(limit=1)
    with client:
        a = client.post("/api/resolve", json={"url": "https://bit.ly/x"}, headers={"x-forwarded-for": "198.51.100.1, 10.0.0.1"})
        b = client.post("/api/resolve", json={"url": "https://bit.ly/x"}, headers={"x-forwarded-for": "198.51.100.2"})
        a_again = client.post("/api/resolve", json={"url": "https://bit.ly/x"}, headers={"x-forwarded-for": "198.51.100.1"})

    assert (a.status_code, b.status_code, a_again.status_code) == (200, 200, 429)


def test_unexpected_failure_is_a_generic_500(monkeypatch: pytest.MonkeyPatch) -> None:
    client, engine = build_client()

    async def boom(url: str, *, bypass_cache: bool = False):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(engine.resolver, "resolve", boom)
    with client:
        resp = client.post("/api/resolve", json={"url": "https://bit.ly/x"})

    assert resp.status_code == 500
    assert resp.json() == {"ok": False, "error": "Resolution error"}
    assert "secret" not in resp.text


def test_errors_outside_the_endpoints_are_a_generic_500(monkeypatch: pytest.MonkeyPatch) -> None:
    client, _ = build_client()
    limiter = client.app.state.limiter

    def broken(key: str):
        raise RuntimeError("limiter internals")

    monkeypatch.setattr(limiter, "check", broken)
    with TestClient(client.app, raise_server_exceptions=False) as quiet:
        resp = quiet.post("/api/resolve", json={"url": "https://bit.ly/x"})

    assert resp.status_code == 500
    assert resp.json() == {"ok": False, "error": "Resolution error"}
    assert resp.headers["cache-control"] == "no-store"
    assert "internals" not in resp.text


def test_analyze_returns_scored_result() -> None:
    client, _ = build_client()
    with client:
        resp = client.post("/api/analyze", json={"url": "https://bit.ly/x", "label_host": "example.com"})

    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["verdict"] == "warn"
    assert result["score"] == 50
    assert result["hop_count"] == 2
    assert result["stage"] == "resolved"
    assert [s["name"] for s in result["signals"]] == ["shortener", "shortener_obscured", "redirects"]


def test_analyze_rejects_non_web_scheme() -> None:
    client, _ = build_client()
    with client:
        resp = client.post("/api/analyze", json={"url": "javascript:alert(1)"})

    assert resp.status_code == 400


def test_health_reports_loaded_lists() -> None:
    client, _ = build_client()
    with client:
        client.post("/api/resolve", json={"url": "https://bit.ly/x"})
        resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["shorteners"] > 0
    assert body["cache_entries"] == 1


def test_shutdown_closes_the_transport() -> None:
    resolver, transport = make_resolver(ROUTES)
    client, _ = build_client(engine=InspectionEngine(resolver))
    with client:
        client.get("/health")

    assert transport.closed
